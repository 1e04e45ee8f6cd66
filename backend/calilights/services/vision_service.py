# backend/calilights/services/vision_service.py
"""
Entry analysis through the Google Vision images:annotate endpoint.

Extracts the dominant hue, a five-color hex palette, scene/object tags and
alt text for an entry's media. Runs from the analyze_entry_metadata Celery
task; the result feeds prompt building and bridge evaluation.
"""

import logging
from typing import Any, Dict, List

import httpx

from ..config import settings
from ..database.models import Entry
from ..exceptions import PermanentExternalError
from ..services.database_service import database_service
from ..services.entry_service import entry_service
from ..utils.color import hex_from_rgb, hue_from_rgb
from ..utils.retry import RetryPolicy, is_permanent_error, run_with_retry

logger = logging.getLogger("calilights.vision")

MAX_SCENE_TAGS = 8
MAX_OBJECT_TAGS = 5


def _unique(values: List[str]) -> List[str]:
    return [v for v in dict.fromkeys(values) if v]


def parse_annotation(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Turn an images:annotate response into entry analysis fields."""
    annotation = (payload.get("responses") or [{}])[0] or {}
    if annotation.get("error"):
        raise PermanentExternalError(
            f"Vision annotation failed: {annotation['error'].get('message', 'unknown error')}",
            service="vision",
        )

    colors = ((annotation.get("imagePropertiesAnnotation") or {}).get("dominantColors") or {}).get("colors") or []
    palette = []
    for color in colors[:5]:
        rgb = color.get("color") or {}
        palette.append(hex_from_rgb(rgb.get("red", 0), rgb.get("green", 0), rgb.get("blue", 0)))

    dominant_hue = None
    if colors:
        rgb = colors[0].get("color") or {}
        dominant_hue = hue_from_rgb(rgb.get("red", 0), rgb.get("green", 0), rgb.get("blue", 0))

    labels = [a.get("description") for a in annotation.get("labelAnnotations") or []]
    web = annotation.get("webDetection") or {}
    entities = [e.get("description") for e in web.get("webEntities") or []]
    best_guess = (web.get("bestGuessLabels") or [{}])[0].get("label")

    return {
        "dominant_hue": dominant_hue,
        "palette": palette,
        "scene_tags": _unique(labels)[:MAX_SCENE_TAGS],
        "object_tags": _unique(entities)[:MAX_OBJECT_TAGS],
        "alt_text": best_guess,
    }


class VisionService:
    """Vision API client plus the entry analysis workflow."""

    async def _annotate(self, media_url: str) -> Dict[str, Any]:
        body = {
            "requests": [
                {
                    "image": {"source": {"imageUri": media_url}},
                    "features": [
                        {"type": "IMAGE_PROPERTIES", "maxResults": 1},
                        {"type": "LABEL_DETECTION", "maxResults": 10},
                        {"type": "WEB_DETECTION", "maxResults": 5},
                    ],
                }
            ]
        }
        async with httpx.AsyncClient(timeout=settings.vision_timeout) as client:
            response = await client.post(
                settings.vision_api_url, params={"key": settings.vision_api_key}, json=body
            )
            response.raise_for_status()
            return response.json()

    async def analyze(self, media_url: str) -> Dict[str, Any]:
        """
        Analyze one media reference.

        Raises:
            PermanentExternalError: Missing API key or annotation error
            httpx.HTTPError: Provider failure after retries
        """
        if not settings.vision_api_key:
            raise PermanentExternalError("Vision API key is not configured", service="vision")

        payload = await run_with_retry(
            self._annotate, media_url,
            policy=RetryPolicy.fast(),
            on_retry=lambda attempt, e: logger.warning(f"Vision API retry attempt {attempt}: {e}"),
        )
        return parse_annotation(payload)

    async def analyze_entry(self, entry_id: str) -> str:
        """
        Analyze an entry and store the result.

        Returns:
            The resulting metadata status ("completed", "failed" or "missing")
        """
        async with database_service.get_session() as session:
            entry: Entry = await entry_service.get_entry(session, entry_id)
            if entry is None:
                logger.warning(f"Entry {entry_id} not found for analysis")
                return "missing"
            media_url = entry.media_url

        try:
            analysis = await self.analyze(media_url)
        except Exception as e:
            if not is_permanent_error(e):
                raise
            logger.error(f"Entry {entry_id} analysis failed permanently: {e}")
            async with database_service.get_session() as session:
                await entry_service.mark_analysis_failed(session, entry_id)
            return "failed"

        async with database_service.get_session() as session:
            await entry_service.apply_analysis(session, entry_id, analysis)
        logger.info(f"Entry {entry_id} analyzed: {len(analysis['scene_tags'])} tags")
        return "completed"


# Global singleton instance
vision_service = VisionService()

"""HTTP API for the CaliLights mission engine."""

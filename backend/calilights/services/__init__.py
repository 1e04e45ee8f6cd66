"""Service layer: persistence, lifecycle transitions, sweeps and provider clients."""

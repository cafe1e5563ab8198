"""Service layer: reliability core and service clients."""

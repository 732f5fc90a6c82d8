"""Brazil flight radar backend: OpenSky polling with a multi-tier snapshot cache."""

__version__ = "0.1.0"

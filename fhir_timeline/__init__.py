"""FHIR Timeline: social media archive to clinical record importer."""

__version__ = "1.0.0"

"""Academy Console: catalog, admin and player tooling for the academy REST API."""

__version__ = "0.1.0"

"""SQLAlchemy persistence for the saga."""

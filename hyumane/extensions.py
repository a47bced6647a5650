"""Application-wide Flask extensions."""

from flask_sqlalchemy import SQLAlchemy


# A single SQLAlchemy handle shared across the application. It backs the
# server-side session table and, when Supabase is not configured, the local
# copies of the social tables. The engine is configured in
# :func:`hyumane.create_app`.
db = SQLAlchemy()

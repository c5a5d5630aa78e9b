"""Core: settings, logging, errors, DB session, locks, request dependencies."""

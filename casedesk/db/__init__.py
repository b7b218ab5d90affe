"""Database base classes, session and initialisation."""

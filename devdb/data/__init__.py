"""Data layer for devdb."""

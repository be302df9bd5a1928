"""Domain services used by job handlers."""

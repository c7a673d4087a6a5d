"""Calendar mirror: keeps a local copy of provider calendars in sync."""

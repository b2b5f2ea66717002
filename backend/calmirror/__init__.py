"""CalMirror: keeps calendars mutually busy with private block events."""

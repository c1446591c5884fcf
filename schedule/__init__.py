"""Week, recurrence and visibility helpers shared by the web app and workers."""

"""Email and Discord notifications for parish members."""

"""Users and communities as seen by the messaging core."""

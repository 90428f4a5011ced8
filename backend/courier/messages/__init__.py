"""Message persistence and the HTTP fallback endpoints."""

"""Live delivery: connection registry, rooms, fan-out and the WebSocket protocol."""

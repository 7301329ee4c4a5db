"""Real-time fan-out over Socket.IO."""

"""Android device bridge."""

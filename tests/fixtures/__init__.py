"""Components and flows used only by tests."""

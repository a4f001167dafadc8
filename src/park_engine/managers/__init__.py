"""Engine managers."""

"""Domain models, reference ranges and errors for device integration."""

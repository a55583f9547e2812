"""Core messaging layer: envelope codec, connection supervisor, publisher, dispatcher."""

"""Individual enrichers. Each maps (text, context) to an EnricherOutput."""

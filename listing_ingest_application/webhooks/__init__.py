"""HTTP receiver for Bright Data notify and data-delivery callbacks."""

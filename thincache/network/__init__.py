"""Network module for thin cache."""

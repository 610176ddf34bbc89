"""cowysvoid edge services."""

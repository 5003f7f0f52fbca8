"""Search service application package."""

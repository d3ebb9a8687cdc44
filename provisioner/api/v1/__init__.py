"""
API v1 package.

Contains versioned API routes for the provisioning API.
"""

from provisioner.api.v1.routes import router

__all__ = ["router"]

"""Store Provisioning Platform: provisions and tears down per-tenant stores on Kubernetes."""

__version__ = "1.0.0"

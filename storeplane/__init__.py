"""
storeplane: multi-tenant store provisioning control plane.
"""
__version__ = "0.1.0"

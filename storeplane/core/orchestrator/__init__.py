"""
Asynchronous provisioning orchestrator and external provisioner drivers.
"""

"""
Control-plane core: store lifecycle, tenant guardrails, orchestration, gateway, monitoring.
"""

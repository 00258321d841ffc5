"""
Health and golden metrics.
"""

"""
HTTP gateway: Flask app factory, routes, audit log, circuit breakers, token store, settings.
"""

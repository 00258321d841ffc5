"""
Store routes. Creation, retry and delete return 202 as soon as the request is accepted;
callers poll GET /stores/{id} for the outcome.
"""
from flask import request

from .app import json_body, reply, request_ctx


def register_store_routes(app, cp, prefix, current_identity):

    @app.route(f"{prefix}/stores", methods=["POST"])
    def stores_create():
        identity = current_identity()
        store = cp.stores.create_store(identity, json_body(), request_ctx())
        return reply({"message": "Store creation initiated. Provisioning is in progress.", "store": store}, 202)

    @app.route(f"{prefix}/stores", methods=["GET"])
    def stores_list():
        identity = current_identity()
        return reply(cp.stores.list_stores(identity, request.args.to_dict()))

    @app.route(f"{prefix}/stores/<store_id>", methods=["GET"])
    def stores_get(store_id):
        identity = current_identity()
        return reply({"store": cp.stores.get_store(identity, store_id, request_ctx())})

    @app.route(f"{prefix}/stores/<store_id>/logs", methods=["GET"])
    def stores_logs(store_id):
        identity = current_identity()
        return reply(cp.stores.get_store_logs(identity, store_id, request.args.to_dict(), request_ctx()))

    @app.route(f"{prefix}/stores/<store_id>", methods=["DELETE"])
    def stores_delete(store_id):
        identity = current_identity()
        store = cp.stores.delete_store(identity, store_id, request_ctx())
        return reply({"message": "Store deletion initiated.", "store": store}, 202)

    @app.route(f"{prefix}/stores/<store_id>/retry", methods=["POST"])
    def stores_retry(store_id):
        identity = current_identity()
        store = cp.stores.retry_store(identity, store_id, request_ctx())
        return reply({"message": "Store retry initiated. Provisioning will restart.", "store": store}, 202)

    @app.route(f"{prefix}/audit", methods=["GET"])
    def audit_list():
        identity = current_identity()
        return reply(cp.stores.list_audit(identity, request.args.to_dict()))

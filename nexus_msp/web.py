"""Flask-powered JSON API for the NexusMSP back office."""
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from flask import Flask, g, jsonify, request
from flask import has_request_context

from .config import AppConfig, ensure_default_config, load_config
from .integration_state import M365_INTEGRATION_ID, IntegrationStateTracker, InvalidStatusError
from .m365_client import (
    GraphClient,
    M365AuthError,
    M365ClientError,
    M365ConfigurationError,
    M365Credentials,
    M365GraphError,
    TokenProvider,
    utc_now,
)
from .m365_sync import M365SyncService
from .models import (
    CLIENT_STATUSES,
    SERVICE_CATEGORIES,
    SUBSCRIPTION_STATUSES,
    Client,
    LicenseAssignment,
    LicensePool,
    Service,
    Subscription,
    new_id,
    to_millis,
)
from .storage import EntityStore, NotFoundError, Repositories, ensure_seed


_RENEWAL_HORIZON = timedelta(days=30)
_RECENT_ACTIVITY_LIMIT = 5


class ValidationError(ValueError):
    """Raised when a request body is missing required values."""


def _ok(data: Any, status: int = 200) -> Tuple[Any, int]:
    return jsonify({"success": True, "data": data}), status


def _bad(message: str, status: int = 400, **extra: Any) -> Tuple[Any, int]:
    payload: Dict[str, Any] = {"success": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


def _require_str(body: Dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if not isinstance(body.get(key), str) or not body[key].strip()]
    if missing:
        raise ValidationError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def _require_choice(value: Any, choices: Iterable[str], label: str) -> None:
    options = tuple(choices)
    if value not in options:
        raise ValidationError(f"{label} must be one of: {', '.join(options)}")


def create_app(config_path: Optional[Path | str] = None) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    ensure_default_config(resolved_config_path)

    app = Flask(__name__)
    app.config["CONFIG_PATH"] = resolved_config_path
    app.json.sort_keys = False
    app.config["SECRET_KEY"] = _load_app_config(app).web.secret_key

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach all API routes to the provided Flask app."""

    @app.before_request
    def _ensure_seed() -> None:
        if request.path.startswith("/api/"):
            config = _load_app_config(app)
            ensure_seed(_get_repos(app, config), config.storage.seed_file)

    @app.errorhandler(NotFoundError)
    def _handle_not_found(exc: NotFoundError) -> Any:
        return _bad(str(exc), 404)

    @app.errorhandler(ValidationError)
    def _handle_validation(exc: ValidationError) -> Any:
        return _bad(str(exc), 400)

    # ------------------------------------------------------------------ #
    # Microsoft 365                                                      #
    # ------------------------------------------------------------------ #
    @app.post("/api/integrations/m365/test")
    def api_m365_test() -> Any:
        config = _load_app_config(app)
        try:
            sku_count = _build_sync_service(app, config).test_connection()
        except M365ClientError as exc:
            return _m365_error_response(app, exc)
        except Exception as exc:
            app.logger.exception("M365 test: unexpected failure: %s", exc)
            return _bad(str(exc), 500)
        return _ok({"success": True, "skuCount": sku_count})

    @app.post("/api/integrations/m365/sync")
    def api_m365_sync() -> Any:
        config = _load_app_config(app)
        try:
            result = _build_sync_service(app, config).sync()
        except M365ClientError as exc:
            return _m365_error_response(app, exc)
        except Exception as exc:
            app.logger.exception("M365 sync: unexpected failure: %s", exc)
            return _bad(str(exc), 500)
        return _ok(result.to_dict())

    @app.get("/api/integrations/m365/status")
    def api_m365_status() -> Any:
        config = _load_app_config(app)
        state = _get_tracker(app, config).get(M365_INTEGRATION_ID)
        summary = state.config.summary
        return _ok(
            {
                "status": state.status,
                "lastSyncedAt": state.last_synced_at,
                "summary": summary.to_dict() if summary else None,
            }
        )

    # ------------------------------------------------------------------ #
    # Integration states                                                 #
    # ------------------------------------------------------------------ #
    @app.get("/api/integration-states")
    def api_list_integration_states() -> Any:
        config = _load_app_config(app)
        states = _get_tracker(app, config).list()
        return _ok([state.to_dict(mask_secret=True) for state in states])

    @app.get("/api/integration-states/<string:integration_id>")
    def api_get_integration_state(integration_id: str) -> Any:
        config = _load_app_config(app)
        state = _get_tracker(app, config).get(integration_id)
        return _ok(state.to_dict(mask_secret=True))

    @app.post("/api/integration-states/<string:integration_id>")
    def api_upsert_integration_state(integration_id: str) -> Any:
        config = _load_app_config(app)
        body = _json_body()
        status = body.get("status")
        patch = body.get("config")
        if status is None and not patch:
            return _bad("status or config is required")
        if patch is not None and not isinstance(patch, dict):
            return _bad("config must be an object")
        try:
            state = _get_tracker(app, config).upsert(integration_id, status=status, config=patch)
        except InvalidStatusError as exc:
            return _bad(str(exc))
        return _ok(state.to_dict(mask_secret=True))

    # ------------------------------------------------------------------ #
    # Clients                                                            #
    # ------------------------------------------------------------------ #
    @app.get("/api/clients")
    def api_list_clients() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        return _ok([client.to_dict() for client in repos.clients.list()])

    @app.post("/api/clients")
    def api_create_client() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        _require_str(body, "name", "contactPerson", "email")
        status = body.get("status") or "active"
        _require_choice(status, CLIENT_STATUSES, "status")
        client = repos.clients.create(
            Client(
                id=new_id(),
                name=body["name"],
                contact_person=body["contactPerson"],
                email=body["email"],
                status=status,
                created_at=to_millis(utc_now()),
            )
        )
        repos.record_activity("client_created", f"New client added: {client.name}")
        return _ok(client.to_dict())

    @app.get("/api/clients/<string:client_id>")
    def api_get_client(client_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        return _ok(repos.clients.require(client_id).to_dict())

    @app.put("/api/clients/<string:client_id>")
    def api_update_client(client_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        if "status" in body:
            _require_choice(body["status"], CLIENT_STATUSES, "status")

        def _apply(current: Client) -> Client:
            current.name = body.get("name", current.name)
            current.contact_person = body.get("contactPerson", current.contact_person)
            current.email = body.get("email", current.email)
            current.status = body.get("status", current.status)
            return current

        client = repos.clients.mutate(client_id, _apply)
        repos.record_activity("client_updated", f"Client details updated for {client.name}")
        return _ok(client.to_dict())

    @app.delete("/api/clients/<string:client_id>")
    def api_delete_client(client_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        client = repos.clients.require(client_id)
        deleted = repos.clients.delete(client_id)
        repos.record_activity("client_deleted", f"Client removed: {client.name}")
        return _ok({"id": client_id, "deleted": deleted})

    @app.get("/api/clients/<string:client_id>/subscriptions")
    def api_client_subscriptions(client_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        items = [
            sub.to_dict()
            for sub in repos.subscriptions.list()
            if sub.client_id == client_id and not sub.is_internal
        ]
        return _ok(items)

    @app.get("/api/clients/<string:client_id>/license-assignments")
    def api_client_license_assignments(client_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        items = [a.to_dict() for a in repos.license_assignments.list() if a.client_id == client_id]
        return _ok(items)

    # ------------------------------------------------------------------ #
    # Services                                                           #
    # ------------------------------------------------------------------ #
    @app.get("/api/services")
    def api_list_services() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        return _ok([service.to_dict() for service in repos.services.list()])

    @app.post("/api/services")
    def api_create_service() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        _require_str(body, "name")
        category = body.get("category") or "SaaS"
        _require_choice(category, SERVICE_CATEGORIES, "category")
        service = repos.services.create(
            Service(
                id=new_id(),
                name=body["name"],
                category=category,
                description=str(body.get("description") or ""),
            )
        )
        repos.record_activity("service_created", f"New service added: {service.name}")
        return _ok(service.to_dict())

    @app.put("/api/services/<string:service_id>")
    def api_update_service(service_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        if "category" in body:
            _require_choice(body["category"], SERVICE_CATEGORIES, "category")

        def _apply(current: Service) -> Service:
            current.name = body.get("name", current.name)
            current.category = body.get("category", current.category)
            current.description = body.get("description", current.description)
            return current

        service = repos.services.mutate(service_id, _apply)
        repos.record_activity("service_updated", f"Service updated: {service.name}")
        return _ok(service.to_dict())

    @app.delete("/api/services/<string:service_id>")
    def api_delete_service(service_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        service = repos.services.require(service_id)
        deleted = repos.services.delete(service_id)
        repos.record_activity("service_deleted", f"Service removed: {service.name}")
        return _ok({"id": service_id, "deleted": deleted})

    # ------------------------------------------------------------------ #
    # Subscriptions                                                      #
    # ------------------------------------------------------------------ #
    @app.get("/api/subscriptions")
    def api_list_subscriptions() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        return _ok([sub.to_dict() for sub in repos.subscriptions.list()])

    @app.post("/api/subscriptions")
    def api_create_subscription() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        subscription = repos.subscriptions.create(_subscription_from_body(_json_body(), internal=False))
        client = repos.clients.get(subscription.client_id)
        service = repos.services.get(subscription.service_id)
        repos.record_activity(
            "subscription_created",
            f"New subscription for {service.name if service else subscription.service_id} "
            f"added to {client.name if client else subscription.client_id}",
        )
        return _ok(subscription.to_dict())

    @app.get("/api/subscriptions/<string:subscription_id>")
    def api_get_subscription(subscription_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        return _ok(repos.subscriptions.require(subscription_id).to_dict())

    @app.put("/api/subscriptions/<string:subscription_id>")
    def api_update_subscription(subscription_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        if "status" in body:
            _require_choice(body["status"], SUBSCRIPTION_STATUSES, "status")

        def _apply(current: Subscription) -> Subscription:
            payload = current.to_dict()
            payload.update(body)
            updated = Subscription.from_dict(payload)
            updated.id = current.id
            updated.client_id = current.client_id
            updated.service_id = current.service_id
            updated.is_internal = current.is_internal
            return updated

        return _ok(repos.subscriptions.mutate(subscription_id, _apply).to_dict())

    @app.delete("/api/subscriptions/<string:subscription_id>")
    def api_delete_subscription(subscription_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        subscription = repos.subscriptions.require(subscription_id)
        deleted = repos.subscriptions.delete(subscription_id)
        client = repos.clients.get(subscription.client_id)
        service = repos.services.get(subscription.service_id)
        repos.record_activity(
            "subscription_deleted",
            f"Subscription for {service.name if service else subscription.service_id} "
            f"removed from {client.name if client else subscription.client_id}",
        )
        return _ok({"id": subscription_id, "deleted": deleted})

    @app.get("/api/internal-subscriptions")
    def api_list_internal_subscriptions() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        return _ok([sub.to_dict() for sub in repos.subscriptions.list() if sub.is_internal])

    @app.post("/api/internal-subscriptions")
    def api_create_internal_subscription() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        subscription = repos.subscriptions.create(_subscription_from_body(_json_body(), internal=True))
        return _ok(subscription.to_dict())

    # ------------------------------------------------------------------ #
    # License pools and assignments                                      #
    # ------------------------------------------------------------------ #
    @app.get("/api/license-pools")
    def api_list_license_pools() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        assigned: Dict[str, int] = {}
        for assignment in repos.license_assignments.list():
            assigned[assignment.pool_id] = assigned.get(assignment.pool_id, 0) + assignment.assigned_seats
        items = []
        for pool in repos.license_pools.list():
            payload = pool.to_dict()
            payload["assignedSeats"] = assigned.get(pool.id, 0)
            items.append(payload)
        return _ok(items)

    @app.post("/api/license-pools")
    def api_create_license_pool() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        _require_str(body, "name", "serviceId")
        pool = LicensePool.from_dict({**body, "id": new_id()})
        return _ok(repos.license_pools.create(pool).to_dict())

    @app.put("/api/license-pools/<string:pool_id>")
    def api_update_license_pool(pool_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()

        def _apply(current: LicensePool) -> LicensePool:
            return LicensePool.from_dict({**current.to_dict(), **body, "id": current.id})

        return _ok(repos.license_pools.mutate(pool_id, _apply).to_dict())

    @app.delete("/api/license-pools/<string:pool_id>")
    def api_delete_license_pool(pool_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        if not repos.license_pools.delete(pool_id):
            raise NotFoundError("Pool not found")
        return _ok({"id": pool_id, "deleted": True})

    @app.post("/api/license-assignments")
    def api_create_license_assignment() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()
        _require_str(body, "poolId", "clientId")
        assignment = LicenseAssignment.from_dict(
            {**body, "id": new_id(), "assignedAt": to_millis(utc_now())}
        )
        return _ok(repos.license_assignments.create(assignment).to_dict())

    @app.put("/api/license-assignments/<string:assignment_id>")
    def api_update_license_assignment(assignment_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        body = _json_body()

        def _apply(current: LicenseAssignment) -> LicenseAssignment:
            return LicenseAssignment.from_dict({**current.to_dict(), **body, "id": current.id})

        return _ok(repos.license_assignments.mutate(assignment_id, _apply).to_dict())

    @app.delete("/api/license-assignments/<string:assignment_id>")
    def api_delete_license_assignment(assignment_id: str) -> Any:
        repos = _get_repos(app, _load_app_config(app))
        if not repos.license_assignments.delete(assignment_id):
            raise NotFoundError("Assignment not found")
        return _ok({"id": assignment_id, "deleted": True})

    # ------------------------------------------------------------------ #
    # Dashboard                                                          #
    # ------------------------------------------------------------------ #
    @app.get("/api/dashboard-stats")
    def api_dashboard_stats() -> Any:
        repos = _get_repos(app, _load_app_config(app))
        clients = repos.clients.list()
        subscriptions = repos.subscriptions.list()
        activities = repos.activities.list()

        active = [sub for sub in subscriptions if sub.status == "active" and not sub.is_internal]
        now = utc_now()
        now_ms = to_millis(now)
        horizon_ms = to_millis(now + _RENEWAL_HORIZON)
        activities.sort(key=lambda activity: activity.created_at, reverse=True)
        return _ok(
            {
                "totalMrr": sum(sub.cost for sub in active),
                "activeClients": sum(1 for client in clients if client.status == "active"),
                "upcomingRenewals": sum(
                    1 for sub in subscriptions if now_ms < sub.renewal_date <= horizon_ms
                ),
                "activeSubscriptionsCount": len(active),
                "servicesWithIssues": sum(
                    1 for sub in subscriptions if sub.monitoring_status in ("issue", "degraded")
                ),
                "recentActivity": [a.to_dict() for a in activities[:_RECENT_ACTIVITY_LIMIT]],
            }
        )


def _subscription_from_body(body: Dict[str, Any], internal: bool) -> Subscription:
    if internal:
        _require_str(body, "serviceId")
    else:
        _require_str(body, "clientId", "serviceId")
    status = body.get("status") or "pending"
    _require_choice(status, SUBSCRIPTION_STATUSES, "status")
    payload = {
        **body,
        "id": new_id(),
        "status": status,
        "isInternal": internal,
        "monitoringStatus": "ok",
        "usage": 0,
    }
    if internal:
        payload["clientId"] = "internal"
    return Subscription.from_dict(payload)


def _m365_error_response(app: Flask, exc: M365ClientError) -> Tuple[Any, int]:
    if isinstance(exc, M365ConfigurationError):
        app.logger.warning("M365: configuration incomplete: %s", exc)
        return _bad(str(exc), 400, missingKey=exc.missing_key)
    if isinstance(exc, M365AuthError):
        app.logger.error("M365: token request rejected (error=%s): %s", exc.error, exc.description)
        return _bad(str(exc), 502, authError=exc.error)
    if isinstance(exc, M365GraphError):
        app.logger.error("M365: Graph request failed (status=%s): %s", exc.status_code, exc.body)
        return _bad(str(exc), 502, graphStatus=exc.status_code, graphBody=exc.body)
    app.logger.error("M365: %s", exc)
    return _bad(str(exc), 500)


def _get_repos(app: Flask, config: AppConfig) -> Repositories:
    repos = app.config.get("_REPOSITORIES")
    path = config.storage.data_file
    if repos is None or repos.store.path != path:
        repos = Repositories(EntityStore(path))
        app.config["_REPOSITORIES"] = repos
    return repos


def _get_tracker(app: Flask, config: AppConfig) -> IntegrationStateTracker:
    return IntegrationStateTracker(_get_repos(app, config))


def _get_graph_client(app: Flask, config: AppConfig) -> GraphClient:
    """Return a Graph client for the resolved credentials, reusing its token cache."""

    tracker = _get_tracker(app, config)
    fallback = M365Credentials(
        tenant_id=config.m365.tenant_id,
        client_id=config.m365.client_id,
        client_secret=config.m365.client_secret,
    )
    credentials = tracker.credentials_for(M365_INTEGRATION_ID, fallback)
    signature: Tuple[Any, ...] = (*credentials.signature, config.m365.request_timeout)
    cached_signature = app.config.get("_M365_CONFIG_SIGNATURE")
    cached_client = app.config.get("_M365_CLIENT")
    if cached_client and cached_signature == signature:
        return cached_client

    client = GraphClient(TokenProvider(credentials), timeout=config.m365.request_timeout)
    app.config["_M365_CLIENT"] = client
    app.config["_M365_CONFIG_SIGNATURE"] = signature
    return client


def _build_sync_service(app: Flask, config: AppConfig) -> M365SyncService:
    repos = _get_repos(app, config)
    return M365SyncService(
        _get_graph_client(app, config),
        repos,
        IntegrationStateTracker(repos),
        currency=config.m365.currency,
    )


def _load_app_config(app: Flask) -> AppConfig:
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("NEXUS_WEB_HOST", "0.0.0.0"),
        port=int(os.environ.get("NEXUS_WEB_PORT", "5000")),
        debug=os.environ.get("NEXUS_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()

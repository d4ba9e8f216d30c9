from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from .domain import RouterDescriptor
from .extensions import limiter
from .services.accounts import (
    AccountError,
    NotFoundError,
    change_password,
    check_router_connection,
    create_account,
    get_router,
    get_speed_plan,
    get_user,
    recharge_account,
    set_expiry,
    toggle_account,
)
from .services.sync import ImportSelection, commit_import, parse_expiry, resync_router, scan_import

api = Blueprint("api", __name__)


# =========================================================
# Helpers
# =========================================================
def _json() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AccountError(f"{name} must be an integer")


@api.errorhandler(AccountError)
def _account_error(e: AccountError):
    return _error(str(e), 400)


@api.errorhandler(NotFoundError)
def _not_found(e: NotFoundError):
    return _error(str(e), 404)


# =========================================================
# Routers
# =========================================================
@api.post("/routers/test")
@limiter.limit("10 per minute")
def router_test():
    """
    Test a router connection. With routerId, the stored router's status is
    updated; otherwise the form values are tested as an unsaved router.
    """
    data = _json()

    router = None
    if data.get("routerId"):
        router = get_router(_int(data["routerId"], "routerId"))

    address = (data.get("address") or (router.address if router else "") or "").strip()
    username = (data.get("apiUsername") or (router.api_username if router else "") or "").strip()
    password = data.get("apiPassword") or (router.api_password if router else "") or ""
    if not address or not username or not password:
        return _error("Missing required fields", 400)

    descriptor = RouterDescriptor(
        id=router.id if router else None,
        name=(data.get("friendlyName") or (router.friendly_name if router else "") or "").strip(),
        address=address,
        port=_int(data.get("port") or (router.port if router else 8728), "port"),
        username=username,
        password=password,
        use_tls=bool(data.get("useTls", router.use_tls if router else False)),
    )

    result = check_router_connection(descriptor, router=router)
    return jsonify(result.to_dict())


@api.post("/routers/<int:router_id>/import")
def router_import_scan(router_id: int):
    router = get_router(router_id)
    res = scan_import(router)
    if not res.success:
        return jsonify(res.to_dict()), 502

    plan = res.plan
    return jsonify(
        {
            "success": True,
            "users": [c.to_dict() for c in plan.new],
            "totalFound": plan.remote_total,
            "newUsers": len(plan.new),
        }
    )


@api.post("/routers/<int:router_id>/import/save")
def router_import_save(router_id: int):
    data = _json()
    users = data.get("users")
    if not isinstance(users, list):
        return _error("Invalid users data", 400)

    router = get_router(router_id)
    try:
        selections = [ImportSelection.from_dict(u) for u in users if isinstance(u, dict)]
    except ValueError as e:
        return _error(str(e), 400)

    res = commit_import(router, selections)
    return jsonify(
        {
            "success": True,
            "importedCount": len(res.added),
            "skippedCount": len(res.skipped),
            "importedUsers": res.added,
            "skippedUsers": res.skipped,
        }
    )


@api.post("/routers/<int:router_id>/resync")
def router_resync(router_id: int):
    router = get_router(router_id)
    res = resync_router(router)
    if not res.success:
        return jsonify(res.to_dict()), 502

    body = res.to_dict()
    body["usersAdded"] = len(res.added)
    body["usersUpdated"] = len(res.updated)
    return jsonify(body)


# =========================================================
# PPPoE users
# =========================================================
@api.post("/pppoe-users")
def pppoe_user_create():
    data = _json()
    if not data.get("routerId") or not data.get("username") or not data.get("password"):
        return _error("Missing required fields", 400)

    router = get_router(_int(data["routerId"], "routerId"))
    plan = None
    if data.get("speedPlanId"):
        plan = get_speed_plan(_int(data["speedPlanId"], "speedPlanId"), router.id)

    days = _int(data["days"], "days") if data.get("days") is not None else None
    res = create_account(router, data["username"], data["password"], speed_plan=plan, days=days)
    return jsonify(res.to_dict()), (201 if res.ok else 502)


@api.post("/pppoe-users/<int:user_id>/toggle")
def pppoe_user_toggle(user_id: int):
    data = _json()
    user = get_user(user_id)
    res = toggle_account(user, enabled=not bool(data.get("disable")))
    return jsonify(res.to_dict()), (200 if res.ok else 502)


@api.post("/pppoe-users/<int:user_id>/recharge")
def pppoe_user_recharge(user_id: int):
    data = _json()
    days = _int(data["days"], "days") if data.get("days") is not None else None
    user = get_user(user_id)
    res = recharge_account(user, days=days)
    return jsonify(res.to_dict())


@api.put("/pppoe-users/<int:user_id>/expiry")
def pppoe_user_expiry(user_id: int):
    data = _json()
    if not data.get("expiryAt"):
        return _error("Expiry date is required", 400)
    try:
        expiry_at = parse_expiry(str(data["expiryAt"]))
    except ValueError as e:
        return _error(str(e), 400)

    user = get_user(user_id)
    return jsonify(set_expiry(user, expiry_at).to_dict())


@api.put("/pppoe-users/<int:user_id>/password")
def pppoe_user_password(user_id: int):
    data = _json()
    user = get_user(user_id)
    res = change_password(user, data.get("password") or "")
    return jsonify(res.to_dict()), (200 if res.ok else 502)

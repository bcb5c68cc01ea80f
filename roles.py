from enum import Enum
from typing import Dict, FrozenSet, Tuple

from errors import PermissionDenied


class Role(str, Enum):
    FARMER = "FARMER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"
    CENTRAL_OPERATOR = "CENTRAL_OPERATOR"
    RETAIL_OPERATOR = "RETAIL_OPERATOR"
    WAREHOUSE = "WAREHOUSE"
    DISTRIBUTOR = "DISTRIBUTOR"


class Action(str, Enum):
    RECORD_HARVEST = "record_harvest"
    VERIFY = "verify"
    REJECT = "reject"
    PICKUP = "pickup"
    RECEIVE = "receive"
    RECORD_SHIPMENT = "record_shipment"


# landing page first
ROUTES: Dict[Role, Tuple[str, ...]] = {
    Role.FARMER: ("/farmer",),
    Role.ADMIN: ("/dashboard", "/admin"),
    Role.SUPERADMIN: ("/superadmin", "/dashboard", "/admin"),
    Role.CENTRAL_OPERATOR: ("/operator",),
    Role.RETAIL_OPERATOR: ("/operator",),
    Role.WAREHOUSE: ("/operator",),
    Role.DISTRIBUTOR: ("/distributor",),
}

CAPABILITIES: Dict[Action, FrozenSet[Role]] = {
    Action.RECORD_HARVEST: frozenset({Role.FARMER}),
    Action.VERIFY: frozenset({Role.ADMIN}),
    Action.REJECT: frozenset({Role.ADMIN}),
    Action.PICKUP: frozenset({Role.CENTRAL_OPERATOR, Role.RETAIL_OPERATOR}),
    Action.RECEIVE: frozenset({Role.CENTRAL_OPERATOR, Role.RETAIL_OPERATOR, Role.WAREHOUSE}),
    Action.RECORD_SHIPMENT: frozenset({Role.FARMER, Role.CENTRAL_OPERATOR, Role.RETAIL_OPERATOR}),
}


def landing_route(role: Role) -> str:
    return ROUTES[role][0]


def may_visit(role: Role, path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in ROUTES[role])


def require(role: str, action: Action) -> None:
    try:
        parsed = Role(role)
    except ValueError:
        raise PermissionDenied(f"unknown role {role!r}") from None
    if parsed not in CAPABILITIES[action]:
        raise PermissionDenied(f"role {parsed.value} may not {action.value.replace('_', ' ')}")

"""
Credit Service Routes Registry
Defines all API routes and service metadata for discovery.
"""
from typing import List, Dict, Any

SERVICE_ROUTES = [
    # Health
    {
        "path": "/health",
        "methods": ["GET"],
        "auth_required": False,
        "description": "Basic health check endpoint"
    },
    {
        "path": "/api/v1/credits/health",
        "methods": ["GET"],
        "auth_required": False,
        "description": "Service health check (API v1)"
    },
    # Balances
    {
        "path": "/api/v1/credits",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Create a user's balance"
    },
    {
        "path": "/api/v1/credits/{user_id}",
        "methods": ["GET", "PUT", "DELETE"],
        "auth_required": True,
        "description": "Get, update or soft-delete a user's balance"
    },
    {
        "path": "/api/v1/credits/{user_id}/history",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Get a user's credit history"
    },
    # Credit Operations
    {
        "path": "/api/v1/credits/{user_id}/add",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Add demand credits with an optional promo code"
    },
    {
        "path": "/api/v1/credits/{user_id}/purchase",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Purchase demand credits through the payment gateway"
    },
    {
        "path": "/api/v1/credits/{user_id}/consume",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Consume exact amounts from each bucket"
    },
    {
        "path": "/api/v1/credits/{user_id}/consume-priority",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Consume credits, subscription credits first"
    },
    {
        "path": "/api/v1/credits/transfer",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Transfer demand credits between users"
    },
    # Promo Codes
    {
        "path": "/api/v1/promo-codes",
        "methods": ["GET", "POST"],
        "auth_required": True,
        "description": "List promo codes (GET) or create a promo code (POST)"
    },
    {
        "path": "/api/v1/promo-codes/validate",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Validate a promo code for a user"
    },
    {
        "path": "/api/v1/promo-codes/use",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Redeem a promo code for a user"
    },
    {
        "path": "/api/v1/promo-codes/use-legacy",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Legacy promo code redemption"
    },
    {
        "path": "/api/v1/promo-codes/code/{code}",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Get promo code by code"
    },
    {
        "path": "/api/v1/promo-codes/usages/user/{user_id}",
        "methods": ["GET"],
        "auth_required": True,
        "description": "List a user's promo code usages"
    },
    {
        "path": "/api/v1/promo-codes/{promo_code_id}",
        "methods": ["GET", "PUT", "DELETE"],
        "auth_required": True,
        "description": "Get, update or delete a promo code"
    },
    {
        "path": "/api/v1/promo-codes/{promo_code_id}/cancel",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Cancel a promo code"
    },
    {
        "path": "/api/v1/promo-codes/{promo_code_id}/usages",
        "methods": ["GET"],
        "auth_required": True,
        "description": "List usages of a promo code"
    },
    # Credit Packs
    {
        "path": "/api/v1/credit-packs",
        "methods": ["GET"],
        "auth_required": True,
        "description": "List credit packs on sale"
    },
    {
        "path": "/api/v1/credit-packs/{pack_id}",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Get a credit pack"
    },
    {
        "path": "/api/v1/credit-packs/admin/all",
        "methods": ["GET"],
        "auth_required": True,
        "description": "List every credit pack (admin)"
    },
    {
        "path": "/api/v1/credit-packs/admin",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Create a credit pack (admin)"
    },
    {
        "path": "/api/v1/credit-packs/admin/{pack_id}",
        "methods": ["PUT", "DELETE"],
        "auth_required": True,
        "description": "Update or delete a credit pack (admin)"
    },
    {
        "path": "/api/v1/credit-packs/admin/{pack_id}/deactivate",
        "methods": ["PATCH"],
        "auth_required": True,
        "description": "Take a credit pack off sale (admin)"
    },
    {
        "path": "/api/v1/credit-packs/admin/{pack_id}/activate",
        "methods": ["PATCH"],
        "auth_required": True,
        "description": "Put a credit pack back on sale (admin)"
    },
    # Memberships
    {
        "path": "/api/v1/memberships",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Create a membership"
    },
    {
        "path": "/api/v1/memberships/stripe-customer",
        "methods": ["POST"],
        "auth_required": True,
        "description": "Create a Stripe customer and membership"
    },
    {
        "path": "/api/v1/memberships/user/{user_id}",
        "methods": ["GET"],
        "auth_required": True,
        "description": "Get a user's membership"
    },
    {
        "path": "/api/v1/memberships/{membership_id}",
        "methods": ["GET", "PUT", "DELETE"],
        "auth_required": True,
        "description": "Get, update or delete a membership"
    },
    {
        "path": "/api/v1/memberships/{membership_id}/subscription",
        "methods": ["POST", "DELETE"],
        "auth_required": True,
        "description": "Create (POST) or cancel (DELETE) the Stripe subscription"
    },
    {
        "path": "/api/v1/webhooks/stripe",
        "methods": ["POST"],
        "auth_required": False,
        "description": "Stripe subscription lifecycle webhook"
    },
]


def get_routes_for_discovery() -> Dict[str, Any]:
    """
    Generate compact route metadata for service registration
    """
    health_routes: List[str] = []
    credit_routes: List[str] = []
    promo_routes: List[str] = []
    pack_routes: List[str] = []
    membership_routes: List[str] = []
    for route in SERVICE_ROUTES:
        path = route["path"]
        compact_path = path.replace("/api/v1/", "")
        if "health" in path:
            health_routes.append(compact_path)
        elif path.startswith("/api/v1/credits"):
            credit_routes.append(compact_path)
        elif path.startswith("/api/v1/promo-codes"):
            promo_routes.append(compact_path)
        elif path.startswith("/api/v1/credit-packs"):
            pack_routes.append(compact_path)
        else:
            membership_routes.append(compact_path)
    return {
        "route_count": str(len(SERVICE_ROUTES)),
        "base_path": "/api/v1",
        "health": ",".join(health_routes),
        "credits": ",".join(credit_routes),
        "promo_codes": ",".join(promo_routes),
        "credit_packs": ",".join(pack_routes),
        "memberships": ",".join(membership_routes),
        "methods": "GET,POST,PUT,PATCH,DELETE",
        "public_count": str(sum(1 for r in SERVICE_ROUTES if not r["auth_required"])),
        "protected_count": str(sum(1 for r in SERVICE_ROUTES if r["auth_required"])),
    }


# Service metadata
SERVICE_METADATA = {
    "service_name": "credit_service",
    "version": "2.0.0",
    "tags": ["v1", "credit", "promo-code", "credit-pack", "membership"],
    "capabilities": [
        "credit_balances",
        "credit_consumption",
        "priority_consumption",
        "credit_transfer",
        "credit_purchase",
        "promo_codes",
        "credit_packs",
        "memberships",
        "stripe_webhooks",
        "event_driven"
    ]
}

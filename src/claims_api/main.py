import logging
import os
from typing import Dict

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.claims_api import auth, claims, customers, db, employees, policies, profiles
from src.claims_api.logging_config import RequestLoggingMiddleware, setup_logging
from src.claims_api.rate_limit import RateLimitMiddleware

setup_logging()
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Service health checks."},
    {"name": "Auth", "description": "Registration, login, password management and current user."},
    {"name": "User Profiles", "description": "Profile data and settings for the current user; admin management of accounts."},
    {"name": "Policy Types", "description": "Policy types and their hierarchical taxonomy."},
    {"name": "Claims", "description": "Claims linking customers, employees and policy types."},
    {"name": "Customers", "description": "Customer records."},
    {"name": "Employees", "description": "Employees handling claims."},
]

app = FastAPI(
    title="Insurance Claims API",
    description=(
        "Backend API for managing insurance claims: customers, employees, hierarchical "
        "policy types, claims and user accounts.\n\n"
        "Auth: Use the `Authorization: Bearer <token>` header for protected routes."
    ),
    version="1.0.0",
    openapi_tags=openapi_tags,
)

# CORS: allow all by default. Restrict via CORS_ALLOW_ORIGINS env (comma separated).
allow_origins = ["*"]
env_val = os.getenv("CORS_ALLOW_ORIGINS")
if env_val:
    allow_origins = [o.strip() for o in env_val.split(",") if o.strip()]

# Added innermost first: requests pass logging -> CORS -> rate limit -> routes.
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.on_event("startup")
def _startup() -> None:
    db.init_db_pool()


@app.on_event("shutdown")
def _shutdown() -> None:
    db.close_db_pool()


@app.get("/", tags=["Health"], summary="Health check")
def health_check() -> Dict[str, str]:
    """Health check endpoint used by clients to verify backend availability."""
    return {"message": "Welcome to the Insurance Claims API"}


api_router = APIRouter(prefix="/api")
api_router.include_router(auth.router)
api_router.include_router(profiles.router)
api_router.include_router(policies.router)
api_router.include_router(claims.router)
api_router.include_router(customers.router)
api_router.include_router(employees.router)
app.include_router(api_router)

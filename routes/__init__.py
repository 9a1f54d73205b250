"""Routes package initializer."""

from .reimbursement_routes import register_reimbursement_routes

__all__ = [
    "register_reimbursement_routes",
]

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI REST service.
"""

from lxmin.integrations.fastapi import (
    create_app,
    lxmin_lifespan,
    register_lxmin_routes,
    serve,
)

__all__ = [
    "create_app",
    "lxmin_lifespan",
    "register_lxmin_routes",
    "serve",
]

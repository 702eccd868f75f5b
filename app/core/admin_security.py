from __future__ import annotations

import os
from typing import Any

from jose import jwt

# Staff tokens are issued by the login service; this service only verifies them.
JWT_SECRET = os.getenv("ADMIN_JWT_SECRET", "dev-change-me")
JWT_ALG = os.getenv("ADMIN_JWT_ALG", "HS256")


def decode_admin_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])

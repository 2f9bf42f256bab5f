from __future__ import annotations

import os

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://orgscope:orgscope@db:5432/orgscope",
)
DEFAULT_PAGE_SIZE = int(os.getenv("ORGSCOPE_DEFAULT_PAGE_SIZE", "10"))
MAX_PAGE_SIZE = int(os.getenv("ORGSCOPE_MAX_PAGE_SIZE", "100"))

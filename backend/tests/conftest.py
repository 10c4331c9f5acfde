from __future__ import annotations

import os

# inbox_web.api builds its runtime objects at import time.
os.environ.setdefault("INBOX_STORE_BACKEND", "inmemory")
os.environ.setdefault("PLATFORM_SENDER_TYPE", "stub")
os.environ.setdefault("RUNTIME_SECRET_GUARD_MODE", "off")

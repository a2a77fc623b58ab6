# trading/idempotency.py
import time, uuid

def now_ms() -> int:
    """Current wall-clock time in milliseconds (signature timestamps)."""
    return int(time.time() * 1000)

def make_client_id(prefix: str = "ps") -> str:
    """Client-assigned order id used for correlation and deduplication."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"

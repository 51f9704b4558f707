from datetime import datetime, timezone


def utc_now() -> str:
    # Microseconds keep creation order stable for jobs enqueued in one burst.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

def backoff_delay(attempt: int, base: float, multiplier: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``cap`` seconds."""
    if attempt < 1:
        return 0.0
    return min(base * multiplier ** (attempt - 1), cap)

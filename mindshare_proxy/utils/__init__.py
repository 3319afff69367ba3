def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        return repr(obj)


def failure_reason(exception: BaseException) -> str:
    """
    Describe an exception in one non-empty line.

    httpx raises several errors with an empty message (a bare ReadTimeout for
    example), so the exception type is used when there is nothing else.
    """
    if exception is None:
        return "unknown error"
    text = _safe_str(exception).strip()
    name = type(exception).__name__
    if not text:
        return name
    # Chained cause usually carries the socket level detail
    cause = exception.__cause__ or exception.__context__
    if cause is not None and _safe_str(cause).strip() and _safe_str(cause) not in text:
        return f"{name}: {text} ({_safe_str(cause).strip()})"
    return f"{name}: {text}"

def compute_unique_name(existing_names: list[str], base: str) -> str:
    """Return `base`, or `base (k)` with the smallest free k >= 2.

    Gaps left by players who left are reused: with "Alice" and "Alice (3)"
    taken, the next Alice becomes "Alice (2)".
    """
    name = base.strip()
    taken = set(existing_names)
    if name not in taken:
        return name
    k = 2
    while f"{name} ({k})" in taken:
        k += 1
    return f"{name} ({k})"

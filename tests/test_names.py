from prompt_party.names import compute_unique_name


def test_unique_name_passthrough():
    assert compute_unique_name([], "Alice") == "Alice"
    assert compute_unique_name(["Bob"], "  Alice ") == "Alice"


def test_unique_name_suffixes():
    assert compute_unique_name(["Alice"], "Alice") == "Alice (2)"
    assert compute_unique_name(["Alice", "Alice (2)"], "Alice") == "Alice (3)"


def test_unique_name_reuses_gaps():
    assert compute_unique_name(["Alice", "Alice (3)"], "Alice") == "Alice (2)"


def test_unique_name_is_case_sensitive():
    assert compute_unique_name(["alice"], "Alice") == "Alice"

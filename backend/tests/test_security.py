from backend.app.security import hash_session_token


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10


def test_session_token_hash_is_stable_and_one_way():
    h = hash_session_token("secret")
    assert hash_session_token("secret") == h
    assert hash_session_token("wrong") != h
    assert "secret" not in h
    # The stored hash itself must not work as a token.
    assert hash_session_token(h) != h

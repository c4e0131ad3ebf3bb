"""Token issuance and lookup"""
import pytest

from enrollpay.core.errors import InvalidToken
from enrollpay.core.tokens import hash_token, is_well_formed, issue_token
from enrollpay.services import enrollment_store


def test_issued_token_shape():
    token = issue_token()
    assert len(token.raw_token) == 64
    assert is_well_formed(token.raw_token)
    assert token.token_hash == hash_token(token.raw_token)
    assert token.suffix == token.raw_token[-4:]


def test_tokens_are_unique():
    assert len({issue_token().raw_token for _ in range(50)}) == 50


@pytest.mark.parametrize("raw", [None, "", "abc", "G" * 64, "A" * 64, 12345, "a" * 63, "a" * 65])
def test_malformed_tokens_rejected(raw):
    assert not is_well_formed(raw)


def test_resolve_exact_match_only(db, make_link):
    link = make_link()
    raw = link.token.raw_token

    assert enrollment_store.resolve(db, raw).id == link.enrollment.id

    for candidate in (raw[:-1], raw[:32], raw[1:] + "0"):
        with pytest.raises(InvalidToken):
            enrollment_store.resolve(db, candidate)


def test_malformed_and_unknown_tokens_are_indistinguishable(db, make_link):
    make_link()
    with pytest.raises(InvalidToken) as malformed:
        enrollment_store.resolve(db, "not-a-token")
    with pytest.raises(InvalidToken) as unknown:
        enrollment_store.resolve(db, issue_token().raw_token)
    assert malformed.value.message == unknown.value.message
    assert malformed.value.status_code == unknown.value.status_code == 404


def test_raw_token_is_not_stored(db, make_link):
    link = make_link()
    db.refresh(link.enrollment)
    assert link.enrollment.token_hash != link.token.raw_token
    assert link.enrollment.token_suffix == link.token.raw_token[-4:]

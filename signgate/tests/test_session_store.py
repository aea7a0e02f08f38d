import asyncio

import pytest

from signgate.app.core.errors import SessionStateConflict
from signgate.app.schemas.session import SigningSession, SigningStatus
from signgate.app.services.session_store import (
    DuplicateSession,
    InMemorySessionStore,
)

pytestmark = pytest.mark.anyio

DOCUMENT_HASH = "0x" + "ab" * 32
SIGNATURE = "0x" + "1b" * 65


def make_session(session_id: str = "s1", user_id: str = "alice") -> SigningSession:
    return SigningSession(
        session_id=session_id,
        document_hash=DOCUMENT_HASH,
        content_hash=DOCUMENT_HASH,
        signer_address="0x" + "dd" * 20,
        message="Document signing request",
        user_id=user_id,
        timestamp="2024-01-01T00:00:00.000Z",
    )


async def test_save_and_find():
    store = InMemorySessionStore()
    session = make_session()

    await store.save(session)

    assert await store.find("s1") == session
    assert await store.find("missing") is None
    assert len(store) == 1


async def test_duplicate_ids_are_rejected():
    store = InMemorySessionStore()
    await store.save(make_session())

    with pytest.raises(DuplicateSession):
        await store.save(make_session())


async def test_find_by_user_keeps_insertion_order():
    store = InMemorySessionStore()
    for session_id, user_id in [("a", "alice"), ("b", "bob"), ("c", "alice")]:
        await store.save(make_session(session_id, user_id))

    sessions = await store.find_by_user("alice")

    assert [s.session_id for s in sessions] == ["a", "c"]
    assert await store.find_by_user("carol") == []


async def test_update_if_unchanged():
    store = InMemorySessionStore()
    session = make_session()
    await store.save(session)

    signed = session.transition(SigningStatus.SIGNED, signature=SIGNATURE)

    assert await store.update(signed, expected_status=SigningStatus.PENDING)
    # second writer loses: status is no longer pending
    assert not await store.update(signed, expected_status=SigningStatus.PENDING)
    assert (await store.find("s1")).status == SigningStatus.SIGNED


async def test_update_of_missing_session_returns_false():
    store = InMemorySessionStore()
    assert not await store.update(make_session("ghost"))


async def test_delete():
    store = InMemorySessionStore()
    await store.save(make_session())

    assert await store.delete("s1") is True
    assert await store.delete("s1") is False
    assert await store.find("s1") is None


async def test_concurrent_saves_of_distinct_ids():
    store = InMemorySessionStore()

    await asyncio.gather(
        *(store.save(make_session(f"s{i}")) for i in range(20))
    )

    assert len(store) == 20


# ----------------------------------------------------------------------
# Snapshot transitions
# ----------------------------------------------------------------------

def test_transitions_are_forward_only():
    session = make_session()
    failed = session.transition(SigningStatus.FAILED)

    with pytest.raises(SessionStateConflict):
        failed.transition(SigningStatus.PENDING)
    with pytest.raises(SessionStateConflict):
        failed.transition(SigningStatus.SIGNED, signature=SIGNATURE)


def test_signature_cannot_be_rewritten():
    signed = make_session().transition(
        SigningStatus.SIGNED, signature=SIGNATURE
    )

    with pytest.raises(SessionStateConflict):
        signed.transition(SigningStatus.VERIFIED, signature="0x" + "1c" * 65)

    verified = signed.transition(SigningStatus.VERIFIED)
    assert verified.signature == SIGNATURE


def test_creation_fields_are_immutable():
    with pytest.raises(SessionStateConflict):
        make_session().transition(
            SigningStatus.SIGNED,
            signature=SIGNATURE,
            document_hash="0x" + "00" * 32,
        )


def test_signature_requires_signed_status():
    with pytest.raises(SessionStateConflict):
        make_session().transition(SigningStatus.FAILED, signature=SIGNATURE)


def test_wire_format_uses_camel_case():
    wire = make_session().to_wire()

    assert wire["sessionId"] == "s1"
    assert wire["userID"] == "alice"
    assert wire["status"] == "pending"
    assert "document_hash" not in wire

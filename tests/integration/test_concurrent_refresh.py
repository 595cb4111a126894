import threading
from datetime import timedelta
from services.lock_provider import LocalLockProvider, SessionLeases
from services.rotation_cache import InMemoryRotationCache
from services.rotation_service import RotationArbiter
from services.session_service import SessionService
from utils.hashing import hash_refresh_token


def run_concurrently(count, target):
    barrier = threading.Barrier(count)
    results, errors = [], []

    def worker():
        barrier.wait()
        try:
            results.append(target())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results, errors


def test_simultaneous_refreshes_rotate_once(arbiter, sessions, store):
    pair = sessions.start_session("user-1")
    writes_before = store.puts

    results, errors = run_concurrently(2, lambda: arbiter.refresh(pair.session_id, pair.refresh_token))

    assert errors == []
    assert store.puts == writes_before + 1
    assert sorted(r.rotated for r in results) == [False, True]
    # Both callers hold the same current refresh token
    assert results[0].pair.refresh_token == results[1].pair.refresh_token
    assert store.get(pair.session_id).refresh_token_hash == hash_refresh_token(results[0].pair.refresh_token)


def test_many_racing_clients_share_one_rotation(issuer, store, clock):
    leases = SessionLeases(LocalLockProvider(), ttl_ms=5000, timeout_seconds=5.0,
                           retry_base_ms=1, retry_max_ms=20)
    cache = InMemoryRotationCache(clock=clock)
    arbiter = RotationArbiter(issuer, store, leases, cache, leeway=timedelta(seconds=60), clock=clock)
    pair = SessionService(issuer, store, leases, cache, clock=clock).start_session("user-1")
    writes_before = store.puts

    results, errors = run_concurrently(8, lambda: arbiter.refresh(pair.session_id, pair.refresh_token))

    assert errors == []
    assert store.puts == writes_before + 1
    assert sum(1 for r in results if r.rotated) == 1
    assert len({r.pair.refresh_token for r in results}) == 1


def test_sql_store_rotation(issuer, sql_store, clock):
    leases = SessionLeases(LocalLockProvider(), ttl_ms=5000, timeout_seconds=5.0,
                           retry_base_ms=1, retry_max_ms=20)
    cache = InMemoryRotationCache(clock=clock)
    arbiter = RotationArbiter(issuer, sql_store, leases, cache, leeway=timedelta(seconds=60), clock=clock)
    pair = SessionService(issuer, sql_store, leases, cache, clock=clock).start_session("user-1", {"role": "admin"})

    rotated = arbiter.refresh(pair.session_id, pair.refresh_token)
    again = arbiter.refresh(pair.session_id, pair.refresh_token)

    assert rotated.rotated is True
    assert again.rotated is False
    assert again.pair.refresh_token == rotated.pair.refresh_token
    assert issuer.decode_access_token(again.pair.access_token).claims == {"role": "admin"}
    assert sql_store.get(pair.session_id).refresh_token_hash == hash_refresh_token(rotated.pair.refresh_token)


def test_racing_refreshes_of_long_lived_token(arbiter, sessions, store, clock):
    pair = sessions.start_session("user-1")
    sibling = sessions.start_session("user-1")
    # Past access token expiry, as when two tabs wake up together
    clock.advance(16 * 60)
    writes_before = store.puts

    results, errors = run_concurrently(2, lambda: arbiter.refresh(pair.session_id, pair.refresh_token))

    assert errors == []
    assert store.puts == writes_before + 1
    assert sorted(r.rotated for r in results) == [False, True]
    assert results[0].pair.refresh_token == results[1].pair.refresh_token
    assert store.get(sibling.session_id) is not None

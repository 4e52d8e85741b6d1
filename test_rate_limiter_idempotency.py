from entry.idempotency import IdempotencyStore, idempotency_key
from entry.rate_limiter import RateLimiter, rate_limit_key


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(tmp_path, clock, user_limit=2, team_limit=5) -> RateLimiter:
    return RateLimiter(
        db_path=str(tmp_path / "chat.db"),
        user_limit=user_limit,
        team_limit=team_limit,
        clock=clock,
    )


def test_keys_are_namespaced_by_team_and_user() -> None:
    assert rate_limit_key("T1", "U1") == "team:T1:user:U1"
    assert rate_limit_key("T1") == "team:T1"
    assert idempotency_key("T1", "req-9") == "team:T1:request:req-9"


def test_user_limit_blocks_within_window(tmp_path) -> None:
    limiter = _limiter(tmp_path, FakeClock())

    first = limiter.check("T1", "U1")
    second = limiter.check("T1", "U1")
    third = limiter.check("T1", "U1")

    assert first.allowed and first.remaining == 1
    assert second.allowed and second.remaining == 0
    assert third.allowed is False
    assert third.message == "Rate limit exceeded. Try again in 60 seconds."


def test_team_limit_applies_across_users(tmp_path) -> None:
    limiter = _limiter(tmp_path, FakeClock(), user_limit=10, team_limit=3)

    results = [limiter.check("T1", f"U{i}").allowed for i in range(4)]

    assert results == [True, True, True, False]
    assert limiter.check("T2", "U1").allowed is True


def test_window_resets_after_expiry(tmp_path) -> None:
    clock = FakeClock()
    limiter = _limiter(tmp_path, clock, user_limit=1)

    assert limiter.check("T1", "U1").allowed is True
    clock.now += 30
    blocked = limiter.check("T1", "U1")
    clock.now += 30

    assert blocked.allowed is False
    assert blocked.message == "Rate limit exceeded. Try again in 30 seconds."
    assert limiter.check("T1", "U1").allowed is True


def test_idempotency_replays_until_ttl(tmp_path) -> None:
    clock = FakeClock()
    store = IdempotencyStore(db_path=str(tmp_path / "chat.db"), ttl_hours=1, clock=clock)
    key = idempotency_key("T1", "req-1")

    assert store.get(key) is None
    store.save(key, {"success": True, "response": "Created task."})
    assert store.get(key) == {"success": True, "response": "Created task."}

    clock.now += 3600
    assert store.get(key) is None
    assert store.purge_expired() == 1


def test_idempotency_save_overwrites_existing_entry(tmp_path) -> None:
    store = IdempotencyStore(db_path=str(tmp_path / "chat.db"), ttl_hours=1, clock=FakeClock())
    key = idempotency_key("T1", "req-1")

    store.save(key, {"response": "first"})
    store.save(key, {"response": "second"})

    assert store.get(key) == {"response": "second"}
    assert store.purge_expired() == 0

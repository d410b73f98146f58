import json

from hostcore.security import (
    AnomalyLogger,
    AnomalyType,
    QuotaUsage,
    StoreQuotaOracle,
    UserProfile,
    UserTier,
)
from hostcore.store import APPLICATIONS, JsonRecordStore


def _store_with_apps(tmp_path, owner: str, count: int) -> JsonRecordStore:
    store = JsonRecordStore(tmp_path / "records.json")
    for i in range(count):
        store.insert(APPLICATIONS, {"id": f"id-{i}", "name": f"app-{i}", "owner": owner})
    return store


def test_quota_usage_exceeded():
    assert QuotaUsage(app_count=2, max_apps=3).exceeded is False
    assert QuotaUsage(app_count=3, max_apps=3).exceeded is True
    assert QuotaUsage(app_count=0, max_apps=0).to_dict()["exceeded"] is True


def test_oracle_counts_owned_apps(tmp_path):
    store = _store_with_apps(tmp_path, "alice", 2)
    store.insert(APPLICATIONS, {"id": "other", "name": "other", "owner": "bob"})
    oracle = StoreQuotaOracle(store, default_max_apps=3)

    usage = oracle.get_usage("alice")
    assert (usage.app_count, usage.max_apps) == (2, 3)
    assert usage.exceeded is False
    assert oracle.get_usage("carol").app_count == 0


def test_oracle_respects_tier_and_block(tmp_path):
    store = _store_with_apps(tmp_path, "vip-user", 5)
    oracle = StoreQuotaOracle(store)

    assert oracle.get_usage("vip-user").exceeded is True
    oracle.set_user_profile(UserProfile.from_tier("vip-user", UserTier.VIP))
    assert oracle.get_usage("vip-user").max_apps == 10
    assert oracle.get_usage("vip-user").exceeded is False

    oracle.set_user_profile(UserProfile(user_id="vip-user", tier=UserTier.VIP, max_applications=10, blocked=True))
    assert oracle.get_usage("vip-user").max_apps == 0


def test_user_profile_roundtrip():
    profile = UserProfile.from_tier("u1", UserTier.ADMIN)
    again = UserProfile.from_dict(profile.to_dict())
    assert again == profile
    assert again.max_applications == 100


def test_anomaly_logger_writes_jsonl(tmp_path):
    path = tmp_path / "anomalies.jsonl"
    logger = AnomalyLogger(log_path=path)
    logger.log(AnomalyType.BLOCKED_COMMAND, "rm -rf /", user_id="u1", app_name="shop", severity="high")
    logger.log(AnomalyType.QUOTA_EXCEEDED, "3/3 applications", user_id="u1")

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["anomaly_type"] for line in lines] == ["blocked_command", "quota_exceeded"]
    assert lines[0]["app_name"] == "shop"
    assert len(logger.get_recent()) == 2
    assert len(logger.get_by_type(AnomalyType.BLOCKED_COMMAND)) == 1


def test_anomaly_logger_is_bounded():
    logger = AnomalyLogger(max_events=2)
    for i in range(5):
        logger.log(AnomalyType.INVALID_REFERENCE, f"bad {i}", severity="low")
    assert [e.details for e in logger.get_recent()] == ["bad 3", "bad 4"]

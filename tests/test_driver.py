import textwrap
import threading

import pytest

from policysync.core.driver import Declaration, Driver, load_declarations, summarize
from policysync.core.errors import RemoteFailure, ValidationError
from policysync.core.state_store import StateStore
from policysync.core.transport import Transport

DECLS = [
    Declaration("group", "admins", {"members": ["alice@example.com", "bob@example.com"]}),
    Declaration("host", "web", {"ip": "10.0.0.10"}),
    Declaration("acl", "web-access", {"action": "accept", "src": ["group:admins"], "dst": ["web:443"]}),
    Declaration("nodeattr", "funnel", {"target": ["tag:dev"], "app": '{"tailscale.com/cap/x": [{"a": 1}]}'}),
    Declaration("posture", "default", {"rules": ["posture:base"]}),
    Declaration("settings", "global", {"disableIPv4": False, "oneCGNATRoute": "mac", "randomizeClientPort": True}),
]


@pytest.fixture()
def env(policy_service, tmp_path):
    service, base_url = policy_service
    store = StateStore(str(tmp_path / "state.json"))
    with Transport(timeout_sec=2, pool_maxsize=4) as transport:
        yield service, Driver(store, transport=transport, base_url=base_url, concurrency=4), store


def _statuses(results):
    return {r.address: r.status for r in results}


def test_apply_creates_then_converges(env):
    service, driver, store = env
    results = driver.apply(DECLS)
    assert summarize(results) == {"CREATED": 6}

    assert service.items["groups"]["admins"]["members"] == ["alice@example.com", "bob@example.com"]
    assert service.default_posture == ["posture:base"]
    acl_id = store.get("acl.web-access").identity
    assert acl_id in service.items["acls"]
    nodeattr = service.items["nodeattrs"][store.get("nodeattr.funnel").identity]
    assert nodeattr["target"] == ["*"]
    assert store.get("settings.global").identity == "settings"

    plan = driver.plan(DECLS)
    assert {i.op for i in plan} == {"NOOP"}

    calls = service.count()
    again = driver.apply(DECLS)
    assert summarize(again) == {"UNCHANGED": 6}
    assert service.count() == calls


def test_update_and_delete_from_declarations(env):
    service, driver, store = env
    driver.apply(DECLS)

    changed = [
        Declaration("group", "admins", {"members": ["bob@example.com", "alice@example.com"]}),  # same set
        Declaration("acl", "web-access", {"action": "accept", "src": ["group:admins"], "dst": ["web:80"]}),
    ]
    plan = {i.address: i.op for i in driver.plan(changed)}
    assert plan["group.admins"] == "NOOP"
    assert plan["acl.web-access"] == "UPDATE"
    assert plan["host.web"] == "DELETE"
    assert plan["posture.default"] == "DELETE"

    results = _statuses(driver.apply(changed))
    assert results["acl.web-access"] == "UPDATED"
    assert results["host.web"] == "DELETED"
    acl_id = store.get("acl.web-access").identity
    assert service.items["acls"][acl_id]["dst"] == ["web:80"]
    assert service.items["hosts"] == {}
    assert service.default_posture is None
    assert sorted(store.records()) == ["acl.web-access", "group.admins"]


def test_rename_replaces_named_instance(env):
    service, driver, store = env
    driver.apply([Declaration("group", "ops", {"name": "ops", "members": ["a"]})])
    renamed = [Declaration("group", "ops", {"name": "operators", "members": ["a"]})]

    assert driver.plan(renamed)[0].op == "REPLACE"
    results = driver.apply(renamed)
    assert results[0].status == "REPLACED"
    assert set(service.items["groups"]) == {"operators"}
    assert store.get("group.ops").identity == "operators"


def test_invalid_declaration_does_not_block_others(env):
    service, driver, store = env
    decls = [
        Declaration("nodeattr", "bad", {"target": ["*"], "attr": ["x"], "app": {"k": 1}}),
        Declaration("host", "db", {"ip": "10.0.0.20"}),
    ]
    results = driver.apply(decls)
    assert _statuses(results) == {"nodeattr.bad": "ERROR", "host.db": "CREATED"}
    assert isinstance(results[0].exc, ValidationError)
    assert service.items["nodeattrs"] == {}
    assert store.get("nodeattr.bad") is None


def test_remote_failure_is_reported_and_state_untouched(env):
    service, driver, store = env
    service.fail_once("POST", "/hosts", 409, "host 'web' conflicts with 'web2'")
    results = _statuses(driver.apply(DECLS))
    assert results["host.web"] == "ERROR"
    assert store.get("host.web") is None
    failed = [r for r in driver.apply(DECLS) if r.address == "host.web"][0]
    assert failed.status == "CREATED"


def test_remote_failure_body_is_surfaced(env):
    service, driver, _ = env
    service.fail_once("POST", "/groups", 500, "database is locked")
    result = driver.apply([DECLS[0]])[0]
    assert isinstance(result.exc, RemoteFailure)
    assert result.exc.status == 500 and "database is locked" in result.error


def test_refresh_reports_drift_and_drops_vanished(env):
    service, driver, store = env
    driver.apply(DECLS)
    service.items["groups"]["admins"]["members"] = ["mallory@example.com"]
    del service.items["hosts"]["web"]

    results = driver.refresh()
    statuses = _statuses(results)
    assert statuses["group.admins"] == "DRIFTED"
    assert statuses["host.web"] == "GONE"
    assert statuses["acl.web-access"] == "IN_SYNC"
    drift = [r.drift for r in results if r.address == "group.admins"][0]
    assert [c.field for c in drift.changes] == ["members"]
    assert store.get("host.web") is None
    assert store.get("group.admins").observed["members"] == ["mallory@example.com"]

    # drift is reported, then corrected by the next apply
    assert _statuses(driver.apply(DECLS))["group.admins"] == "UPDATED"
    assert _statuses(driver.apply(DECLS))["host.web"] == "UNCHANGED"


def test_destroy(env):
    service, driver, store = env
    driver.apply(DECLS)
    results = driver.destroy()
    assert summarize(results) == {"DELETED": 6}
    assert store.records() == {}
    assert all(not v for v in service.items.values())
    assert all(v is None for v in service.singletons.values())
    assert service.default_posture is None


def test_cancelled_run_changes_nothing(env):
    service, driver, store = env
    cancel = threading.Event()
    cancel.set()
    results = driver.apply(DECLS, cancel=cancel)
    assert summarize(results) == {"CANCELLED": 6}
    assert service.count() == 0
    assert store.records() == {}


def test_plan_without_transport(tmp_path):
    driver = Driver(StateStore(str(tmp_path / "s.json")))
    plan = driver.plan(DECLS)
    assert [i.op for i in plan] == ["CREATE"] * 6


def test_load_declarations(tmp_path):
    path = tmp_path / "policy.yml"
    path.write_text(textwrap.dedent("""
      resources:
        - kind: group
          name: admins
          spec:
            members: [alice@example.com]
        - kind: settings
          name: global
          spec: {disableIPv4: false, oneCGNATRoute: mac, randomizeClientPort: true}
    """), encoding="utf-8")
    decls = load_declarations(str(path))
    assert [d.address for d in decls] == ["group.admins", "settings.global"]
    assert decls[0].spec == {"members": ["alice@example.com"]}


@pytest.mark.parametrize(
    "text, message",
    [
        ("groups: []\n", "resources"),
        ("resources:\n  - kind: group\n", "needs 'kind' and 'name'"),
        ("resources:\n  - {kind: group, name: a}\n  - {kind: group, name: a}\n", "duplicate"),
        ("resources:\n  - {kind: group, name: a, spec: [1]}\n", "mapping"),
    ],
)
def test_load_declarations_rejects_bad_files(tmp_path, text, message):
    path = tmp_path / "policy.yml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(ValidationError, match=message):
        load_declarations(str(path))

from policysync.core.catalog import get_descriptor
from policysync.core.drift import decide, detect, make_comparable


def test_make_comparable_sorts_sets_and_drops_empties():
    out = make_comparable({"members": ["b", "a"], "note": "", "tags": [], "x": None}, list_as_sets=["members"])
    assert out == {"members": ["a", "b"]}


def test_make_comparable_ignores_fields():
    assert make_comparable({"id": "X1", "action": "accept"}, ignore_fields=["id"]) == {"action": "accept"}


def test_detect_in_sync_ignores_set_order():
    d = get_descriptor("group")
    report = detect(d, "admins", {"name": "admins", "members": ["a", "b"]}, {"name": "admins", "members": ["b", "a"]})
    assert not report.drifted
    assert report.summary() == "group[admins] in sync"


def test_detect_field_changes():
    d = get_descriptor("host")
    report = detect(d, "web", {"name": "web", "ip": "10.0.0.1"}, {"name": "web", "ip": "10.0.0.2", "comment": "x"})
    assert [(c.field, c.stored, c.observed) for c in report.changes] == [
        ("comment", None, "x"),
        ("ip", "10.0.0.1", "10.0.0.2"),
    ]
    assert "drifted: comment, ip" in report.summary()


def test_detect_removed():
    report = detect(get_descriptor("group"), "admins", {"name": "admins"}, None)
    assert report.removed and report.drifted


def test_detect_without_baseline():
    assert not detect(get_descriptor("group"), "admins", None, {"name": "admins"}).drifted
    assert not detect(get_descriptor("group"), "admins", None, None).drifted


def test_decide():
    d = get_descriptor("acl")
    desired = {"action": "accept", "src": ["b", "a"], "dst": ["*:*"]}
    assert decide(d, desired, None, exists=False).op == "CREATE"
    assert decide(d, desired, None, exists=True).op == "UPDATE"

    observed = {"id": "X1", "action": "accept", "src": ["a", "b"], "dst": ["*:*"], "created": "2024-01-01"}
    assert decide(d, desired, observed, exists=True).op == "NOOP"

    changed = decide(d, dict(desired, action="deny"), observed, exists=True)
    assert changed.op == "UPDATE" and changed.reason == "Field differs: action"


def test_decide_sees_fields_removed_from_desired():
    d = get_descriptor("ssh")
    observed = {"id": "S1", "action": "check", "src": ["a"], "dst": ["b"], "users": ["root"], "checkPeriod": "12h"}
    desired = {"action": "check", "src": ["a"], "dst": ["b"], "users": ["root"]}
    assert decide(d, desired, observed, exists=True).reason == "Field differs: checkPeriod"

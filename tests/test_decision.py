from decision import decide
from health import ProbeResult


def ok(node_id, cpu):
    return ProbeResult.success(node_id, cpu)

def ko(node_id):
    return ProbeResult.failure(node_id, "timeout")


def test_scale_up_when_average_exceeds_threshold():
    d = decide([ok(1, 90), ok(2, 95)], creation_in_flight=None, threshold=80)
    assert d.scale_up
    assert d.average_load == 92.5
    assert d.available == 2


def test_failed_probes_do_not_count_in_average():
    d = decide([ok(1, 50), ko(2)], creation_in_flight=None, threshold=80)
    assert not d.scale_up
    assert d.average_load == 50
    assert d.available == 1
    assert d.failed == 1


def test_no_available_node_is_a_noop():
    d = decide([ko(1), ko(2)], creation_in_flight=None, threshold=80)
    assert not d.scale_up
    assert d.average_load is None
    assert d.available == 0
    d = decide([], creation_in_flight=None, threshold=80)
    assert not d.scale_up


def test_threshold_is_strict():
    assert not decide([ok(1, 80)], threshold=80).scale_up
    assert decide([ok(1, 80.1)], threshold=80).scale_up


def test_no_scale_up_while_creation_in_flight():
    d = decide([ok(1, 99)], creation_in_flight=1234, threshold=80)
    assert not d.scale_up
    assert d.average_load == 99


def test_no_scale_up_during_cooldown():
    d = decide([ok(1, 99)], creation_in_flight=None, threshold=80, in_cooldown=True)
    assert not d.scale_up


def test_threshold_defaults_to_configuration(cfg):
    cfg.set("scaling.cpu_threshold", 40)
    assert decide([ok(1, 50)]).scale_up

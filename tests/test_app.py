import pytest

import app
import config as Cfg
import notify
from fleet import NodeState
from conftest import FakeCloudAPI, FakeHealthSession, droplet

SECRETS = {"cloud_api_key": "k", "service_key": "s"}


@pytest.fixture
def fleet_cloud():
    return FakeCloudAPI([droplet(1, ip="10.0.0.1"), droplet(2, ip="10.0.0.2")])


@pytest.fixture
def session():
    return FakeHealthSession({"10.0.0.1": {"usage": {"cpu": 90}}, "10.0.0.2": {"usage": {"cpu": 85}}})


@pytest.fixture
def ctx(fleet_cloud, session):
    context = app.init(context={}, secrets=SECRETS, cloud_api=fleet_cloud, http_session=session, start_threads=False)
    Cfg.set("loadbalancer.id", "lb-1")
    notify.clear_events()
    yield context
    app.shutdown(context)


def test_init_builds_control_objects(ctx):
    for k in ["o_state", "o_cloudapi", "o_fetcher", "o_prober", "o_lb", "o_lifecycle"]:
        assert k in ctx
    assert Cfg.get_int("fleet.min_node_count") == 1
    assert Cfg.get_duration_secs("app.run_period") == 10


def test_init_without_vault_token_is_fatal(fleet_cloud):
    from errors import FatalStartupError
    with pytest.raises(FatalStartupError):
        app.init(context={}, cloud_api=fleet_cloud, start_threads=False)


def test_overloaded_fleet_scales_up(ctx, fleet_cloud):
    d = app.tick(ctx)
    assert d.scale_up
    assert d.average_load == 87.5
    assert len(fleet_cloud.created) == 1
    assert ctx["o_state"].creation_in_flight == 1001
    assert fleet_cloud.lb_puts[0][1]["member_ids"] == [1, 2]
    assert len(notify.get_events("ScaleUpDecision")) == 1


def test_no_second_creation_while_one_is_in_flight(ctx, fleet_cloud):
    app.tick(ctx)
    d = app.tick(ctx)
    assert not d.scale_up
    assert "in flight" in d.reason
    assert len(fleet_cloud.created) == 1


def test_warming_node_is_kept_out_of_load_balancer(ctx, fleet_cloud, session):
    app.tick(ctx)
    fleet_cloud.assign_address(1001, "10.0.0.9")
    app.tick(ctx)
    assert ctx["o_lifecycle"].active_node().state == NodeState.AWAITING_ADDRESS
    for _, payload in fleet_cloud.lb_puts:
        assert 1001 not in payload["member_ids"]


def test_promoted_node_joins_load_balancer_then_cooldown(ctx, fleet_cloud, session):
    app.tick(ctx)
    fleet_cloud.assign_address(1001, "10.0.0.9")
    session.answers["10.0.0.9"] = {"usage": {"cpu": 10}}
    lc = ctx["o_lifecycle"].current_lifecycle()
    assert ctx["o_lifecycle"].poll_once(lc)
    assert fleet_cloud.lb_puts[-1][1]["member_ids"] == [1, 2, 1001]

    # Fleet load is still above threshold without the new node answering
    session.answers["10.0.0.9"] = {"usage": {"cpu": 95}}
    d = app.tick(ctx)
    assert not d.scale_up
    assert "cool-down" in d.reason
    assert len(fleet_cloud.created) == 1

    ctx["o_state"].start_cooldown(-1)
    d = app.tick(ctx)
    assert d.scale_up
    assert len(fleet_cloud.created) == 2


def test_low_load_does_not_scale(ctx, fleet_cloud, session):
    session.answers["10.0.0.1"] = {"usage": {"cpu": 10}}
    d = app.tick(ctx)
    assert not d.scale_up
    assert fleet_cloud.created == []


def test_fetch_failure_skips_tick(ctx, fleet_cloud):
    fleet_cloud.fail_list = True
    assert app.tick(ctx) is None
    assert fleet_cloud.created == []
    assert len(notify.get_events("SnapshotFetchError")) == 1


def test_load_balancer_failure_is_retried_next_tick(ctx, fleet_cloud, session):
    session.answers["10.0.0.1"] = {"usage": {"cpu": 10}}
    fleet_cloud.fail_lb = True
    d = app.tick(ctx)
    assert d is not None
    assert ctx["o_state"].last_pushed_members is None

    fleet_cloud.fail_lb = False
    app.tick(ctx)
    assert fleet_cloud.lb_puts[-1][1]["member_ids"] == [1, 2]
    app.tick(ctx)
    assert len(fleet_cloud.lb_puts) == 1


def test_create_failure_is_not_fatal(ctx, fleet_cloud):
    fleet_cloud.fail_create = True
    d = app.tick(ctx)
    assert d.scale_up
    assert ctx["o_state"].creation_in_flight is None
    assert len(notify.get_events("NodeCreationFailure")) == 1

    fleet_cloud.fail_create = False
    app.tick(ctx)
    assert len(fleet_cloud.created) == 1


def test_failed_probes_never_trigger_scale_up(ctx, session):
    session.answers = {}
    d = app.tick(ctx)
    assert not d.scale_up
    assert d.average_load is None
    assert d.failed == 2


def test_disabled_loop_does_nothing(ctx, fleet_cloud):
    Cfg.set("app.disable", "1")
    assert app.tick(ctx) is None
    assert fleet_cloud.lb_puts == []
    assert fleet_cloud.created == []


def test_sync_load_balancer_with_drain(ctx, fleet_cloud):
    assert app.sync_load_balancer(ctx, drain_most_recent=True) == [1]
    assert fleet_cloud.lb_puts[-1][1]["member_ids"] == [1]


@pytest.mark.parametrize("delete_fails", [False, True])
def test_dead_node_still_listed_stays_out_of_load_balancer(ctx, fleet_cloud, delete_fails):
    app.tick(ctx)
    lc = ctx["o_lifecycle"].current_lifecycle()
    fleet_cloud.assign_address(1001, "10.0.0.9")
    if delete_fails:
        fleet_cloud.fail_delete = True
    else:
        # Deletion acknowledged but the droplet is still listed during its teardown
        fleet_cloud.delete_node = lambda node_id: fleet_cloud.deleted.append(node_id) or True

    assert ctx["o_lifecycle"].on_warmup_timeout(lc) == "deleted"
    assert ctx["o_state"].dead_ids == {1001}
    app.tick(ctx)
    app.tick(ctx)
    for _, payload in fleet_cloud.lb_puts:
        assert 1001 not in payload["member_ids"]

    # Forgotten once the listing no longer reports it
    fleet_cloud.droplets = [d for d in fleet_cloud.droplets if d["id"] != 1001]
    app.tick(ctx)
    assert ctx["o_state"].dead_ids == set()


def test_promotion_excludes_dead_nodes(ctx, fleet_cloud, session):
    app.tick(ctx)
    first = ctx["o_lifecycle"].current_lifecycle()
    ctx["o_lifecycle"].on_warmup_timeout(first)
    fleet_cloud.droplets.append(droplet(1001, ip="10.0.0.8"))

    app.tick(ctx)
    second = ctx["o_lifecycle"].current_lifecycle()
    assert second.node.id == 1002
    fleet_cloud.assign_address(1002, "10.0.0.9")
    session.answers["10.0.0.9"] = {"usage": {"cpu": 10}}
    assert ctx["o_lifecycle"].poll_once(second)
    assert fleet_cloud.lb_puts[-1][1]["member_ids"] == [1, 2, 1002]


def test_dry_run_tick_creates_nothing(ctx, fleet_cloud):
    d = app.tick(ctx, dry_run=True)
    assert d.scale_up
    assert fleet_cloud.created == []
    assert ctx["o_state"].creation_in_flight is None
    assert notify.get_events("ScaleUpDecision")[-1]["Data"]["DryRun"] is True

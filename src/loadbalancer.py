""" loadbalancer.py

Load balancer membership synchronization.

The cloud API only supports whole-object replacement of a load balancer: every sync pushes the complete
configuration (forwarding rule, health check, sticky sessions) along with the full member id list. There is no
diff: the member list is always recomputed from the healthy node set, in fleet order.
"""
import config as Cfg
import debug as Dbg
import notify
from notify import record_call as R
from errors import CloudAPIError, LbUpdateError

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)


class LoadBalancerConfig:
    def __init__(self, lb_id, name, region, algorithm, forwarding_rule, health_check, sticky_sessions=None, member_ids=None):
        self.lb_id           = lb_id
        self.name            = name
        self.region          = region
        self.algorithm       = algorithm
        self.forwarding_rule = forwarding_rule
        self.health_check    = health_check
        self.sticky_sessions = sticky_sessions if sticky_sessions is not None else {}
        self.member_ids      = list(member_ids) if member_ids is not None else []

    @staticmethod
    def from_config(member_ids=None):
        forwarding_rule = {
            "entry_protocol": Cfg.get("loadbalancer.forwarding.entry_protocol"),
            "entry_port": Cfg.get_int("loadbalancer.forwarding.entry_port"),
            "target_protocol": Cfg.get("loadbalancer.forwarding.target_protocol"),
            "target_port": Cfg.get_int("loadbalancer.forwarding.target_port")
        }
        certificate_id = Cfg.get("loadbalancer.forwarding.certificate_id")
        if certificate_id != "":
            forwarding_rule["certificate_id"] = certificate_id
        health_check = {
            "protocol": Cfg.get("loadbalancer.health_check.protocol"),
            "port": Cfg.get_int("loadbalancer.health_check.port"),
            "check_interval_seconds": Cfg.get_int("loadbalancer.health_check.check_interval_seconds"),
            "response_timeout_seconds": Cfg.get_int("loadbalancer.health_check.response_timeout_seconds"),
            "healthy_threshold": Cfg.get_int("loadbalancer.health_check.healthy_threshold"),
            "unhealthy_threshold": Cfg.get_int("loadbalancer.health_check.unhealthy_threshold")
        }
        return LoadBalancerConfig(Cfg.get("loadbalancer.id"), Cfg.get("loadbalancer.name"), Cfg.get("loadbalancer.region"),
                Cfg.get("loadbalancer.algorithm"), forwarding_rule, health_check, member_ids=member_ids)

    def to_payload(self):
        return {
            "name": self.name,
            "region": self.region,
            "algorithm": self.algorithm,
            "forwarding_rules": [dict(self.forwarding_rule)],
            "health_check": dict(self.health_check),
            "sticky_sessions": dict(self.sticky_sessions),
            "member_ids": list(self.member_ids)
        }


def desired_members(healthy_node_ids, remove_most_recent=False):
    """ Return the member list to push: the healthy ids in fleet order, minus the last one when draining.
    """
    member_ids = []
    for i in healthy_node_ids:
        if i not in member_ids:
            member_ids.append(i)
    if remove_most_recent and len(member_ids):
        member_ids.pop()
    return member_ids


class LoadBalancerSynchronizer:
    def __init__(self, cloud_api, o_state=None):
        self.cloud_api = cloud_api
        self.o_state   = o_state

    @staticmethod
    def register_config():
        Cfg.register({
            "loadbalancer.id,Stable": {
                "DefaultValue": "",
                "Format"      : "String",
                "Description" : """Identifier of the load balancer in front of the fleet."""
            },
            "loadbalancer.name": "nodesquad-nodes",
            "loadbalancer.region": "sfo2",
            "loadbalancer.algorithm": "round_robin",
            "loadbalancer.forwarding.entry_protocol": "https",
            "loadbalancer.forwarding.entry_port": "443",
            "loadbalancer.forwarding.target_protocol": "http",
            "loadbalancer.forwarding.target_port": "1111",
            "loadbalancer.forwarding.certificate_id,Stable": {
                "DefaultValue": "",
                "Format"      : "String",
                "Description" : """Certificate reference used by the forwarding rule (required for 'https' entry protocol)."""
            },
            "loadbalancer.health_check.protocol": "tcp",
            "loadbalancer.health_check.port": "1111",
            "loadbalancer.health_check.check_interval_seconds": "10",
            "loadbalancer.health_check.response_timeout_seconds": "5",
            "loadbalancer.health_check.healthy_threshold": "5",
            "loadbalancer.health_check.unhealthy_threshold": "3"
        })

    @xray_recorder.capture(name="LoadBalancerSynchronizer.sync")
    def sync(self, healthy_node_ids, remove_most_recent=False):
        """ Push the whole load balancer configuration with the member list computed from 'healthy_node_ids'.

        Return the pushed member list. Raise LbUpdateError on failure; the caller must not consider it fatal.
        """
        lb_config = LoadBalancerConfig.from_config(member_ids=desired_members(healthy_node_ids, remove_most_recent))
        if lb_config.lb_id == "":
            raise LbUpdateError("'loadbalancer.id' is not configured!")
        log.debug("Load balancer payload: %s" % Dbg.pprint(lb_config.to_payload()))
        try:
            R(None, self.cloud_api.put_load_balancer, lb_config.lb_id, lb_config.to_payload())
        except CloudAPIError as e:
            notify.record_event("LoadBalancerSyncFailure", LoadBalancerId=lb_config.lb_id,
                    MemberIds=lb_config.member_ids, Reason=str(e))
            raise LbUpdateError(f"Failed to update load balancer '{lb_config.lb_id}': {e}") from e

        if self.o_state is not None:
            self.o_state.set_pushed_members(lb_config.member_ids)
        log.info("Updated load balancer '%s' with members %s%s" % (lb_config.lb_id, Dbg.short_ids(lb_config.member_ids),
            " (draining most recent node)" if remove_most_recent else ""))
        notify.record_event("LoadBalancerSyncSuccess", LoadBalancerId=lb_config.lb_id, MemberIds=lb_config.member_ids,
                Drain=remove_most_recent)
        return lb_config.member_ids

    def healthy_ids(self, snapshot, exclude_ids=None):
        """ Return the listed node ids minus 'exclude_ids' and the nodes whose warm-up ended Dead.

        A deleted node may stay listed for a while (or forever when its deletion failed).
        """
        exclude_ids = list(exclude_ids) if exclude_ids is not None else []
        if self.o_state is not None:
            exclude_ids.extend(self.o_state.dead_ids)
        return [i for i in snapshot.ids() if i not in exclude_ids]

    def reconcile(self, snapshot, exclude_ids=None):
        """ Sync the load balancer only if the healthy set differs from the last successfully pushed one.

        Return the pushed member list or None when nothing had to be done.
        """
        healthy = self.healthy_ids(snapshot, exclude_ids)
        if self.o_state is not None and self.o_state.last_pushed_members == healthy:
            return None
        return self.sync(healthy)

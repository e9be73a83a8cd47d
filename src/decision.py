""" decision.py

Scale-up decision from a probe batch.

The fleet load is the average CPU usage over the nodes that answered their probe correctly. Failed probes neither
inflate nor deflate the average. Scale-down is not decided here: it is the lifecycle controller that removes nodes
failing their warm-up.
"""
import config as Cfg


class ScalingDecision:
    def __init__(self, scale_up, average_load, available, failed, reason):
        self.scale_up     = scale_up
        self.average_load = average_load
        self.available    = available
        self.failed       = failed
        self.reason       = reason

    def as_dict(self):
        return {
            "ScaleUp": self.scale_up,
            "AverageLoad": self.average_load,
            "Available": self.available,
            "Failed": self.failed,
            "Reason": self.reason
        }

    def __repr__(self):
        return "ScalingDecision(scale_up=%s, average_load=%s, available=%d, failed=%d, reason='%s')" % (
                self.scale_up, self.average_load, self.available, self.failed, self.reason)


def register_config():
    Cfg.register({
        "scaling.cpu_threshold,Stable": {
            "DefaultValue": "80",
            "Format"      : "Float",
            "Description" : """Average CPU usage (in percent) above which a new node is created.

The average is computed only over the nodes that answered their health probe.
            """
        }
    })

def decide(results, creation_in_flight=None, threshold=None, in_cooldown=False):
    if threshold is None: threshold = Cfg.get_float("scaling.cpu_threshold")
    successes = [r for r in results if not r.failed]
    available = len(successes)
    failed    = len(results) - available
    if available == 0:
        return ScalingDecision(False, None, 0, failed, "No node answered its health probe")

    average_load = sum(r.load_metric for r in successes) / available
    if average_load <= threshold:
        return ScalingDecision(False, average_load, available, failed,
                "Average load %.2f is below threshold %s" % (average_load, threshold))
    if creation_in_flight is not None:
        return ScalingDecision(False, average_load, available, failed,
                "Node creation already in flight (%s)" % creation_in_flight)
    if in_cooldown:
        return ScalingDecision(False, average_load, available, failed, "Post promotion cool-down in progress")
    return ScalingDecision(True, average_load, available, failed,
            "Average load %.2f exceeds threshold %s" % (average_load, threshold))

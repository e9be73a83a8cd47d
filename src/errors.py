""" errors.py

Exceptions raised by the control loop components.

Only FatalStartupError is allowed to stop the process. All other errors are contained within one tick or one node
lifecycle.
"""


class NodeSquadError(Exception):
    pass


class FatalStartupError(NodeSquadError):
    """ Secrets or bootstrap configuration could not be obtained. """


class CloudAPIError(NodeSquadError):
    def __init__(self, message, status_code=None, response_body=None):
        super().__init__(message)
        self.status_code   = status_code
        self.response_body = response_body


class TransientFetchError(NodeSquadError):
    """ The fleet could not be listed. The current tick is skipped. """


class ProbeFailure(NodeSquadError):
    """ A single node health probe failed. Never escapes a probe batch. """


class ProbeBatchInFlight(NodeSquadError):
    """ A probe batch was requested while the previous one is still running. """


class CreateFailure(NodeSquadError):
    pass


class LbUpdateError(NodeSquadError):
    pass

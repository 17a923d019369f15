from __future__ import annotations


class DocgraphError(Exception):
    """Base class for all ingester errors."""


class MalformedEventError(DocgraphError):
    """The action is missing required fields. Never retried."""


class ResolverError(DocgraphError):
    """Chain query failed at the transport level or returned garbage.

    Distinct from a not-found lookup, which is a ``None`` result.
    """


class StoreUnavailableError(DocgraphError):
    """Transient persistence failure (connection lost, transient tx error)."""


class MutationRejectedError(DocgraphError):
    """The graph store refused the mutation (schema/constraint). Never retried."""


class FeedError(DocgraphError):
    pass


class SubscriptionRejectedError(FeedError):
    pass


class FeedDisconnectedError(FeedError):
    """The feed connection was lost and the reconnect budget is spent."""


class PipelineFatalError(DocgraphError):
    pass

"""Errors raised by the records domain (sync and query layers)."""

from __future__ import annotations


class RecordsError(Exception):
    """Base class for records-domain errors."""


class SyncError(RecordsError):
    """A sync run could not be started."""


class QueryError(RecordsError):
    """Base class for query-layer errors."""


class MissingContextError(QueryError):
    """No patient identifier was supplied; identity must be re-established."""


class NoInterpretationError(QueryError):
    """Neither the local cache nor the gateway could answer the query."""


class UnrecognizedPlanError(QueryError):
    """A query plan failed validation at the router boundary."""


class InterpretationError(QueryError):
    """The query interpreter could not turn text into a plan."""

"""
Error taxonomy for the incident core.

- ValidationError: nothing to submit; raised to the caller, never reaches the network.
- TransportFailure: the analysis service could not be reached. Raised inside the
  analysis client only and turned into an AnalysisFailure result there.
- PersistenceCorruption: stored collection unreadable. Raised inside the store
  only and recovered as an empty collection.
- IncidentNotFound / SessionNotFound: lookups from the API or operator view.

AnalysisFailure itself is a result value (see shesafe.analysis), not an exception.
"""

from __future__ import annotations


class ShesafeError(Exception):
    pass


class ValidationError(ShesafeError):
    pass


class TransportFailure(ShesafeError):
    pass


class PersistenceCorruption(ShesafeError):
    pass


class IncidentNotFound(ShesafeError):
    def __init__(self, incident_id: str):
        super().__init__(f"incident not found: {incident_id}")
        self.incident_id = incident_id


class SessionNotFound(ShesafeError):
    def __init__(self, session_id: str):
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id

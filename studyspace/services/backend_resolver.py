"""
Effective backend resolution.

The backend a Space *asks for* and the backend it *gets* differ when the
remote credential is missing or rejected.  The result is computed on every
call and never stored, because credential health changes independently of
the Space.
"""
from studyspace.models.database_models import BackendKind
from studyspace.services.credentials import CredentialHealth


def resolve_backend(preference: BackendKind, health: CredentialHealth) -> BackendKind:
    """
    Return the backend to use for one generation or answering pass.

    A key that is currently being re-checked counts as usable, so generation
    is not blocked while validation runs; if the key turns out to be invalid
    the next pass falls back to the local backend.
    """
    if preference != BackendKind.REMOTE:
        return BackendKind.LOCAL

    if health in (CredentialHealth.VALID, CredentialHealth.CHECKING):
        return BackendKind.REMOTE
    return BackendKind.LOCAL

"""
Exceptions and outcome types raised or returned by the identity store.
"""

import enum


class IdentityStoreError(Exception):
    """
    Raised when a directory operation fails in a way the store does not
    tolerate.

    The original :py:class:`ldap.LDAPError`, if any, is available as
    ``__cause__``.

    Args:
        message: human readable description of the failure

    Keyword Args:
        dn: the DN of the entry we were working on, if known

    """

    def __init__(self, message: str, dn: str | None = None) -> None:
        super().__init__(message)
        self.dn = dn


class PreconditionError(IdentityStoreError):
    """Raised when the caller asked for something we never do."""


class MaterializationError(IdentityStoreError):
    """Raised when a search result can't be turned into a DirectoryObject."""


class AuthenticationError(IdentityStoreError):
    """Raised when a bind with the supplied credential fails."""


class ModifyOutcome(enum.Enum):
    """
    The result of :py:meth:`ldapstore.session.LdapSession.try_modify`.

    Membership changes branch on this instead of on the raised
    :py:class:`ldap.LDAPError`.
    """

    #: The directory accepted the modification.
    APPLIED = "applied"
    #: The value was already present (add) or already absent (remove).
    ALREADY_SATISFIED = "already-satisfied"
    #: The modification would have left a mandatory attribute without values.
    SCHEMA_CONFLICT = "schema-conflict"

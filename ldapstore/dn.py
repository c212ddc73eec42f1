"""
Distinguished names.

:py:class:`DirectoryDn` is a parsed, ordered list of RDNs.  Parsing and
rendering (including RFC 4514 escaping) is done by :py:mod:`ldap.dn`.
"""

from typing import Optional

from ldapstore import ldap

from .typing import RDN


class DirectoryDn:
    """
    A distinguished name, held as a list of RDNs.

    The first RDN is the entry's own RDN.  Each RDN is a tuple of
    ``(attribute, value)`` pairs; it has more than one pair only for
    multi-valued RDNs like ``cn=foo+uid=bar``.

    Args:
        rdns: the RDNs, leftmost first

    """

    def __init__(self, rdns: list[RDN] | None = None) -> None:
        self.rdns: list[RDN] = list(rdns) if rdns else []

    @classmethod
    def from_string(cls, dn: str) -> "DirectoryDn":
        """
        Parse ``dn`` into a :py:class:`DirectoryDn`.

        Raises:
            ldap.DECODING_ERROR: ``dn`` is not a well formed DN

        """
        parsed = ldap.dn.str2dn(dn.strip())
        return cls([tuple((attr, value) for attr, value, _ in rdn) for rdn in parsed])

    def __str__(self) -> str:
        return ldap.dn.dn2str(
            [[(attr, value, 1) for attr, value in rdn] for rdn in self.rdns]
        )

    def __repr__(self) -> str:
        return f"DirectoryDn('{self}')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            other = DirectoryDn.from_string(other)
        if not isinstance(other, DirectoryDn):
            return NotImplemented
        return self._normalized() == other._normalized()

    def __hash__(self) -> int:
        return hash(self._normalized())

    def __len__(self) -> int:
        return len(self.rdns)

    def _normalized(self) -> tuple:
        return tuple(
            tuple(sorted((attr.lower(), value.lower()) for attr, value in rdn))
            for rdn in self.rdns
        )

    @property
    def first_rdn(self) -> Optional[RDN]:
        """The entry's own RDN, or ``None`` for the empty DN."""
        if not self.rdns:
            return None
        return self.rdns[0]

    @property
    def first_rdn_string(self) -> str:
        """The entry's own RDN rendered as a string, e.g. ``cn=John Doe``."""
        if not self.rdns:
            return ""
        return str(DirectoryDn([self.rdns[0]]))

    @property
    def first_rdn_attr_name(self) -> str | None:
        rdn = self.first_rdn
        return rdn[0][0] if rdn else None

    @property
    def first_rdn_attr_value(self) -> str | None:
        rdn = self.first_rdn
        return rdn[0][1] if rdn else None

    @property
    def parent_dn(self) -> "DirectoryDn":
        """A new :py:class:`DirectoryDn` without our first RDN."""
        return DirectoryDn(self.rdns[1:])

    def add_first(self, name: str, value: str) -> None:
        """Prepend the single-valued RDN ``name=value``."""
        self.rdns.insert(0, ((name, value),))

    def is_descendant_of(self, other: "DirectoryDn") -> bool:
        """
        Return ``True`` if we sit strictly below ``other`` in the tree.
        """
        if len(self) <= len(other):
            return False
        offset = len(self) - len(other)
        return DirectoryDn(self.rdns[offset:]) == other

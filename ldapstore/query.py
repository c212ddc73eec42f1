"""
Identity queries.

A :py:class:`DirectoryQuery` describes what to search for; the
:py:class:`~ldapstore.store.LdapIdentityStore` runs it.
"""

from collections.abc import Iterable

from ldapstore import ldap

from .conditions import Condition, EqualCondition

#: Search scope names accepted by :py:class:`DirectoryQuery`
SCOPES = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}


class PaginationContext:
    """
    Holds the paged-results cookie between two pages of the same query.
    """

    def __init__(self) -> None:
        self.cookie: bytes | None = None

    @property
    def has_next_page(self) -> bool:
        """
        ``True`` until the first page has been fetched, and afterwards for as
        long as the server keeps handing back a cookie.
        """
        return self.cookie is None or bool(self.cookie)

    def reset(self) -> None:
        self.cookie = None


class DirectoryQuery:
    """
    A search for directory objects.

    Keyword Args:
        search_dn: the base DN to search from
        scope: one of ``"base"``, ``"one"`` or ``"sub"``
        object_classes: every object class a result must have
        conditions: extra conditions, ANDed together
        returning_attributes: the attributes to fetch
        returning_read_only_attributes: fetched attributes the store must
            never write back
        limit: page size for paged searches; 0 means no limit
        offset: results to skip (only meaningful to callers counting)
        order_by: attribute names to sort by.  Sorting is not supported,
            and a non-empty value makes the query fail.

    """

    def __init__(
        self,
        search_dn: str,
        scope: str = "sub",
        object_classes: Iterable[str] | None = None,
        conditions: Iterable[Condition] | None = None,
        returning_attributes: Iterable[str] | None = None,
        returning_read_only_attributes: Iterable[str] | None = None,
        limit: int = 0,
        offset: int = 0,
        order_by: Iterable[str] | None = None,
    ) -> None:
        if scope not in SCOPES:
            msg = f"Unknown search scope '{scope}'; expected one of {list(SCOPES)}"
            raise ValueError(msg)
        self.search_dn = search_dn
        self.scope = scope
        self.object_classes: list[str] = list(object_classes or [])
        self.conditions: list[Condition] = list(conditions or [])
        self.returning_attributes: list[str] = list(returning_attributes or [])
        self.returning_read_only_attributes: set[str] = {
            name.lower() for name in returning_read_only_attributes or []
        }
        self.limit = limit
        self.offset = offset
        self.order_by: list[str] = list(order_by or [])
        self.pagination_context = PaginationContext()

    def __str__(self) -> str:
        conditions = "".join(str(c) for c in self.conditions)
        return (
            f"DirectoryQuery(search_dn={self.search_dn}, scope={self.scope}, "
            f"object_classes={self.object_classes}, conditions={conditions}, "
            f"limit={self.limit}, offset={self.offset})"
        )

    @property
    def ldap_scope(self) -> int:
        return SCOPES[self.scope]

    def add_condition(self, condition: Condition) -> "DirectoryQuery":
        self.conditions.append(condition)
        return self

    def add_returning_attribute(self, name: str, read_only: bool = False) -> None:
        if name.lower() not in {attr.lower() for attr in self.returning_attributes}:
            self.returning_attributes.append(name)
        if read_only:
            self.returning_read_only_attributes.add(name.lower())

    def is_requested(self, name: str) -> bool:
        """Return ``True`` if ``name`` is one of our returning attributes."""
        return name.lower() in {attr.lower() for attr in self.returning_attributes}

    def is_read_only(self, name: str) -> bool:
        return name.lower() in self.returning_read_only_attributes

    def find_equal_condition(self, name: str) -> EqualCondition | None:
        """
        Return the first top level equality condition on ``name``, if any.
        """
        for condition in self.conditions:
            if isinstance(condition, EqualCondition) and condition.matches_attribute(
                name
            ):
                return condition
        return None

"""
Query conditions and search filter assembly.

Each condition renders itself as one or more :py:mod:`ldap_filter` nodes
and appends them to the filter being built.
:py:class:`FilterBuilder` only knows that capability; it never looks
inside a condition.
"""

import logging
from typing import TYPE_CHECKING, Any

from ldap_filter import Filter, ParseError

from .models import OBJECT_CLASS

if TYPE_CHECKING:
    from ldap_filter.filter import GroupAnd

    from .query import DirectoryQuery

logger = logging.getLogger(__name__)


def escape_octets(value: bytes) -> str:
    """
    Escape every byte of ``value`` as ``\\xx`` for use in a filter.  This
    is how binary attributes like ``objectGUID`` are matched.
    """
    return "".join(f"\\{byte:02x}" for byte in value)


class Condition:
    """
    Base class for query conditions.
    """

    def apply_condition(self, chain: list[Any]) -> None:
        """
        Append our filter node(s) to ``chain``.

        Args:
            chain: the list of :py:mod:`ldap_filter` nodes being built

        """
        raise NotImplementedError

    def to_filter(self) -> Any:
        """
        Return our filter as a single :py:mod:`ldap_filter` node.
        """
        chain: list[Any] = []
        self.apply_condition(chain)
        if len(chain) == 1:
            return chain[0]
        return Filter.AND(chain)

    def __str__(self) -> str:
        return self.to_filter().to_string()


class NamedCondition(Condition):
    """
    A condition on a single attribute.

    Args:
        parameter_name: the LDAP attribute name

    """

    def __init__(self, parameter_name: str) -> None:
        self.parameter_name = parameter_name

    def matches_attribute(self, name: str) -> bool:
        return self.parameter_name.lower() == name.lower()


class EqualCondition(NamedCondition):
    """
    ``(name=value)``.

    Args:
        parameter_name: the LDAP attribute name
        value: the value to match; ``bytes`` values are matched octet by octet

    Keyword Args:
        binary: treat a ``str`` value as already-raw octets (latin-1)

    """

    def __init__(self, parameter_name: str, value: Any, binary: bool = False) -> None:
        super().__init__(parameter_name)
        self.value = value
        self.binary = binary

    def apply_condition(self, chain: list[Any]) -> None:
        attr = Filter.attribute(self.parameter_name)
        if isinstance(self.value, bytes):
            chain.append(attr.raw(escape_octets(self.value)))
        elif self.binary:
            chain.append(attr.raw(escape_octets(str(self.value).encode("latin-1"))))
        else:
            chain.append(attr.equal_to(self.value))


class PresentCondition(NamedCondition):
    """``(name=*)``"""

    def apply_condition(self, chain: list[Any]) -> None:
        chain.append(Filter.attribute(self.parameter_name).present())


class GreaterThanCondition(NamedCondition):
    """
    ``(name>=value)``, or its strict form when ``inclusive`` is ``False``.

    LDAP has no strict ``>``, so that is rendered as
    ``(&(name>=value)(!(name=value)))``.
    """

    def __init__(self, parameter_name: str, value: Any, inclusive: bool = True) -> None:
        super().__init__(parameter_name)
        self.value = value
        self.inclusive = inclusive

    def apply_condition(self, chain: list[Any]) -> None:
        attr = Filter.attribute(self.parameter_name)
        chain.append(attr.gte(self.value))
        if not self.inclusive:
            chain.append(Filter.NOT(attr.equal_to(self.value)))


class LessThanCondition(NamedCondition):
    """
    ``(name<=value)``, or its strict form when ``inclusive`` is ``False``.
    """

    def __init__(self, parameter_name: str, value: Any, inclusive: bool = True) -> None:
        super().__init__(parameter_name)
        self.value = value
        self.inclusive = inclusive

    def apply_condition(self, chain: list[Any]) -> None:
        attr = Filter.attribute(self.parameter_name)
        chain.append(attr.lte(self.value))
        if not self.inclusive:
            chain.append(Filter.NOT(attr.equal_to(self.value)))


class BetweenCondition(NamedCondition):
    """``(&(name>=low)(name<=high))``"""

    def __init__(self, parameter_name: str, low: Any, high: Any) -> None:
        super().__init__(parameter_name)
        self.low = low
        self.high = high

    def apply_condition(self, chain: list[Any]) -> None:
        attr = Filter.attribute(self.parameter_name)
        chain.append(attr.gte(self.low))
        chain.append(attr.lte(self.high))


class InCondition(NamedCondition):
    """
    ``(|(name=v1)(name=v2)...)``.  An empty value list contributes nothing.
    """

    def __init__(self, parameter_name: str, values: list[Any]) -> None:
        super().__init__(parameter_name)
        self.values = list(values)

    def apply_condition(self, chain: list[Any]) -> None:
        if not self.values:
            return
        attr = Filter.attribute(self.parameter_name)
        chain.append(Filter.OR([attr.equal_to(v) for v in self.values]))


class NotCondition(Condition):
    """``(!(...))`` around another condition."""

    def __init__(self, condition: Condition) -> None:
        self.condition = condition

    def apply_condition(self, chain: list[Any]) -> None:
        chain.append(Filter.NOT(self.condition.to_filter()))


class OrCondition(Condition):
    """``(|(...)(...))`` over other conditions."""

    def __init__(self, *conditions: Condition) -> None:
        self.conditions = list(conditions)

    def apply_condition(self, chain: list[Any]) -> None:
        if not self.conditions:
            return
        chain.append(Filter.OR([c.to_filter() for c in self.conditions]))


class CustomFilterCondition(Condition):
    """
    A raw filter string, e.g. one supplied by an administrator.

    Raises:
        ValueError: the filter string can't be parsed

    """

    def __init__(self, filter_string: str) -> None:
        filter_string = filter_string.strip()
        if not filter_string.startswith("("):
            filter_string = f"({filter_string})"
        try:
            self.node = Filter.parse(filter_string)
        except ParseError as e:
            msg = f"Invalid LDAP filter: {filter_string}"
            raise ValueError(msg) from e
        self.filter_string = filter_string

    def apply_condition(self, chain: list[Any]) -> None:
        chain.append(self.node)


class FilterBuilder:
    """
    Builds the search filter for a :py:class:`~ldapstore.query.DirectoryQuery`.

    The result is the AND of every condition's fragment followed by the
    object class block: one ``(objectClass=X)`` per required class, or
    ``(objectClass=*)`` when no class is required.
    """

    @staticmethod
    def object_classes_filter(object_classes: list[str]) -> list[Any]:
        attr = Filter.attribute(OBJECT_CLASS)
        if not object_classes:
            return [attr.present()]
        return [attr.equal_to(object_class) for object_class in object_classes]

    def build(self, conditions: list[Condition], object_classes: list[str]) -> "GroupAnd":
        chain: list[Any] = []
        for condition in conditions:
            condition.apply_condition(chain)
        chain.extend(self.object_classes_filter(object_classes))
        return Filter.AND(chain)

    def create_identity_type_search_filter(self, query: "DirectoryQuery") -> str:
        """
        Return the filter string for ``query``.

        Args:
            query: the query to build a filter for

        """
        searchfilter = self.build(query.conditions, query.object_classes).to_string()
        logger.debug(
            "ldapstore.filter.built filter=%s basedn=%s", searchfilter, query.search_dn
        )
        return searchfilter

"""
The directory-agnostic object model.

This module provides :py:class:`DirectoryObject`, the typed entity the
identity store reads from and writes to the directory, and
:py:class:`AttributeMap`, the case-insensitive attribute bag it carries.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from typing import Any, cast

from .dn import DirectoryDn

logger = logging.getLogger(__name__)

#: The objectClass attribute name.  Never stored in
#: :py:attr:`DirectoryObject.attributes`.
OBJECT_CLASS = "objectClass"
#: Written in place of an empty or blank text value.  Some attribute
#: syntaxes reject zero-length strings, so this single space stands in for
#: "present, but with no meaningful data".  It reads back as ``""``.
EMPTY_ATTRIBUTE_VALUE = " "
#: Added to a group's member attribute when removing the last member would
#: otherwise leave a MUST attribute without values.
EMPTY_MEMBER_ATTRIBUTE_VALUE = "cn=empty-membership-placeholder"
USER_PASSWORD_ATTRIBUTE = "userPassword"
#: Active Directory's password attribute.
AD_PASSWORD_ATTRIBUTE = "unicodePwd"


class AttributeMap(MutableMapping):
    """
    A mapping of attribute name to a set of string values.

    Lookups ignore the case of the attribute name; the name as it was first
    stored is what iteration returns.  This is a mutable version of
    :py:class:`django.utils.datastructures.CaseInsensitiveMapping`.

    Setting a key that already exists with different case keeps the
    original spelling.
    """

    def __init__(self, data: Mapping[str, Iterable[str]] | None = None) -> None:
        self._store: dict[str, tuple[str, set[str]]] = {}
        if data:
            for key, value in data.items():
                self[key] = value

    def __getitem__(self, key: str) -> set[str]:
        return self._store[key.lower()][1]

    def __setitem__(self, key: str, value: Iterable[str] | None) -> None:
        if value is None:
            logger.warning(
                "ldapstore.attributes.null-value attribute=%s; storing an empty set",
                key,
            )
            value = set()
        elif isinstance(value, str):
            value = {value}
        existing = self._store.get(key.lower())
        name = existing[0] if existing else key
        self._store[key.lower()] = (name, set(value))

    def __delitem__(self, key: str) -> None:
        del self._store[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._store

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            other_map = other if isinstance(other, AttributeMap) else AttributeMap(other)
            return {k: v[1] for k, v in self._store.items()} == {
                k: v[1] for k, v in other_map._store.items()
            }
        return NotImplemented

    def __repr__(self) -> str:
        return repr({name: values for name, values in self._store.values()})

    def copy(self) -> "AttributeMap":
        return AttributeMap({name: set(values) for name, values in self._store.values()})


class DirectoryObject:
    """
    One directory entry (a user, a group, ...) as the identity store sees it.

    Instances are never shared between store operations: each search result
    produces a fresh object, and each ``add`` / ``update`` works on the
    caller's object.  Don't mutate one instance from more than one thread.

    Keyword Args:
        dn: the entry's DN, as a string or :py:class:`DirectoryDn`
        rdn_attribute_name: the attribute used for the entry's own RDN
        object_classes: the entry's objectClass values
        attributes: initial attribute values

    """

    def __init__(
        self,
        dn: DirectoryDn | str | None = None,
        rdn_attribute_name: str | None = None,
        object_classes: Iterable[str] | None = None,
        attributes: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        if isinstance(dn, str):
            dn = DirectoryDn.from_string(dn)
        #: The entry's distinguished name
        self.dn: DirectoryDn = dn if dn is not None else DirectoryDn()
        #: Assigned by the directory on creation.  Never set this yourself
        #: before calling ``add``.
        self.uuid: str | None = None
        self._rdn_attribute_name: str | None = rdn_attribute_name
        #: objectClass values; kept out of :py:attr:`attributes`
        self.object_classes: set[str] = set(object_classes or [])
        self.attributes: AttributeMap = AttributeMap()
        #: Lower-cased names of attributes we must never write back
        self.read_only_attribute_names: set[str] = set()
        #: attribute name -> highest value index seen in a ranged response
        self.ranged_attributes: dict[str, int] = {}
        for name, values in (attributes or {}).items():
            self.set_attribute(name, values)

    def __repr__(self) -> str:
        return (
            f"DirectoryObject(dn={str(self.dn)!r}, uuid={self.uuid!r}, "
            f"object_classes={sorted(self.object_classes)!r}, "
            f"attributes={self.attributes!r})"
        )

    @property
    def rdn_attribute_name(self) -> str | None:
        """
        The attribute used for our own RDN.  Defaults to the attribute name
        of the first RDN of :py:attr:`dn`.
        """
        if self._rdn_attribute_name:
            return self._rdn_attribute_name
        return self.dn.first_rdn_attr_name

    @rdn_attribute_name.setter
    def rdn_attribute_name(self, value: str | None) -> None:
        self._rdn_attribute_name = value

    # Attributes

    def set_attribute(self, name: str, values: Iterable[str] | None) -> None:
        """
        Replace all values of ``name``.

        Raises:
            ValueError: ``name`` is ``objectClass``; use
                :py:attr:`object_classes` for that.

        """
        if name.lower() == OBJECT_CLASS.lower():
            msg = "objectClass is kept in DirectoryObject.object_classes"
            raise ValueError(msg)
        self.attributes[name] = values

    def set_single_attribute(self, name: str, value: str) -> None:
        self.set_attribute(name, {value})

    def get_attribute_as_string(self, name: str) -> str | None:
        """
        Return one value of ``name``, or ``None`` if it has none.

        Multi-valued attributes return their lowest value so the answer is
        stable.
        """
        values = self.attributes.get(name)
        if not values:
            return None
        return sorted(values)[0]

    def get_attribute_as_set(self, name: str) -> set[str] | None:
        values = self.attributes.get(name)
        if values is None:
            return None
        return set(values)

    # Read only attributes

    def add_read_only_attribute_name(self, name: str) -> None:
        self.read_only_attribute_names.add(name.lower())

    def remove_read_only_attribute_name(self, name: str) -> None:
        self.read_only_attribute_names.discard(name.lower())

    def is_read_only(self, name: str) -> bool:
        return name.lower() in self.read_only_attribute_names

    # Ranged attributes

    def _ranged_key(self, name: str) -> str | None:
        for key in self.ranged_attributes:
            if key.lower() == name.lower():
                return key
        return None

    def add_ranged_attribute(self, name: str, high: int) -> None:
        key = self._ranged_key(name)
        if key is not None:
            del self.ranged_attributes[key]
        self.ranged_attributes[name] = high

    def is_range_complete(self, name: str) -> bool:
        """
        Return ``True`` unless a ranged response told us more values of
        ``name`` are waiting on the server.
        """
        return self._ranged_key(name) is None

    def get_current_range(self, name: str) -> int | None:
        key = self._ranged_key(name)
        return self.ranged_attributes[key] if key is not None else None

    def is_range_complete_for_all_attributes(self) -> bool:
        return not self.ranged_attributes

    def populate_ranged_attribute(self, other: "DirectoryObject", name: str) -> None:
        """
        Merge the values of ``name`` from ``other``, a result of the next
        ranged request for this entry, and take over its range state.

        Args:
            other: the object materialized from the follow-up request
            name: the ranged attribute

        """
        values = other.get_attribute_as_set(name) or set()
        current = self.attributes.get(name, set())
        self.attributes[name] = current | values
        if other.is_range_complete(name):
            key = self._ranged_key(name)
            if key is not None:
                del self.ranged_attributes[key]
        else:
            self.add_ranged_attribute(name, cast("int", other.get_current_range(name)))

    def to_dict(self) -> dict[str, Any]:
        """
        Return a plain ``dict`` representation, handy for logging and tests.
        """
        return {
            "dn": str(self.dn),
            "uuid": self.uuid,
            "rdn_attribute_name": self.rdn_attribute_name,
            "object_classes": sorted(self.object_classes),
            "attributes": {
                name: sorted(values) for name, values in self.attributes.items()
            },
            "read_only_attribute_names": sorted(self.read_only_attribute_names),
            "ranged_attributes": dict(self.ranged_attributes),
        }

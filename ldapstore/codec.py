"""
Translation between :py:class:`~ldapstore.models.DirectoryObject` and the
data shapes python-ldap works with.

:py:class:`AttributeCodec` turns an object into add and modify modlists and
turns raw attribute values back into their in-memory text form.
:py:class:`EntryMaterializer` rebuilds a whole object from one search result.
"""

import binascii
import logging
import re
from base64 import b64decode, b64encode
from collections.abc import Callable
from typing import TYPE_CHECKING

from ldapstore import ldap

from .dn import DirectoryDn
from .exceptions import MaterializationError
from .models import EMPTY_ATTRIBUTE_VALUE, OBJECT_CLASS, DirectoryObject
from .typing import AddModlist, AttributeValues, LDAPData, ModifyModList

if TYPE_CHECKING:
    from .options import StoreConfig
    from .query import DirectoryQuery

logger = logging.getLogger(__name__)

#: Matches ranged attribute names like ``member;range=0-1499`` or
#: ``member;range=1500-*``.
RANGE_PATTERN = re.compile(r"^([^;]+);range=([0-9]+)-([0-9]+|\*)$", re.IGNORECASE)


class AttributeCodec:
    """
    Encodes and decodes attribute values.

    In memory every value is text.  Values of binary attributes (see
    :py:attr:`ldapstore.options.StoreConfig.binary_attributes`) are held
    as base64 text and sent to the directory as raw bytes.

    Args:
        config: the store configuration

    """

    def __init__(self, config: "StoreConfig") -> None:
        self.config = config

    # Encoding

    def _encode_text(self, values: set[str]) -> AttributeValues:
        encoded = []
        for value in sorted(values):
            if not value.strip():
                value = EMPTY_ATTRIBUTE_VALUE
            encoded.append(value.encode("utf-8"))
        return encoded

    def _encode_binary(self, name: str, values: set[str]) -> AttributeValues:
        encoded = []
        for value in sorted(values):
            # Line-wrapped base64 is fine
            value = "".join(value.split())
            if not value:
                logger.warning(
                    "ldapstore.codec.blank-binary-value attribute=%s; "
                    "dropping this value",
                    name,
                )
                continue
            try:
                encoded.append(b64decode(value, validate=True))
            except (binascii.Error, ValueError, TypeError):
                logger.warning(
                    "ldapstore.codec.base64-decode-failed attribute=%s; "
                    "dropping this value",
                    name,
                )
        return encoded

    def should_save(self, obj: DirectoryObject, name: str, is_create: bool) -> bool:
        """
        Decide whether attribute ``name`` of ``obj`` gets written.

        We skip read-only attributes, empty attributes on create, and the
        RDN attribute on update (a changed RDN goes through a rename).
        """
        if obj.is_read_only(name):
            return False
        if is_create and not obj.attributes[name]:
            return False
        rdn_attribute_name = obj.rdn_attribute_name or ""
        return is_create or rdn_attribute_name.lower() != name.lower()

    def build_attributes_for_saving(
        self, obj: DirectoryObject, is_create: bool
    ) -> dict[str, AttributeValues]:
        """
        Return the attributes of ``obj`` to write, as python-ldap values.

        On create the ``objectClass`` attribute is added from
        :py:attr:`~ldapstore.models.DirectoryObject.object_classes`; on
        update it is left alone.

        Args:
            obj: the object being saved
            is_create: ``True`` for an add, ``False`` for a modify

        Returns:
            A dict of attribute name to list of ``bytes`` values.

        """
        data: dict[str, AttributeValues] = {}
        for name, values in obj.attributes.items():
            if not self.should_save(obj, name, is_create):
                continue
            if self.config.is_binary_attribute(name):
                data[name] = self._encode_binary(name, values)
            else:
                data[name] = self._encode_text(values)
        if is_create:
            data[OBJECT_CLASS] = [
                object_class.encode("utf-8")
                for object_class in sorted(obj.object_classes)
            ]
        return data

    def add_modlist(self, obj: DirectoryObject) -> AddModlist:
        """
        Convert ``obj`` to a modlist suitable for passing to ``add_s``.
        """
        return ldap.modlist.addModlist(self.build_attributes_for_saving(obj, True))

    def replace_modlist(self, obj: DirectoryObject) -> ModifyModList:
        """
        Convert ``obj`` to a ``MOD_REPLACE`` modlist suitable for
        ``modify_s``.  An attribute with no values is removed.
        """
        data = self.build_attributes_for_saving(obj, False)
        return [
            (ldap.MOD_REPLACE, name, values or None)  # type: ignore[attr-defined]
            for name, values in data.items()
        ]

    # Decoding

    def extract_attribute(self, name: str, raw: bytes | str) -> str:
        """
        Return the in-memory text form of one raw value.

        Values of binary attributes, and values that are not valid UTF-8,
        come back base64 encoded.  Everything else is decoded and stripped.
        """
        if isinstance(raw, str):
            return raw.strip()
        if self.config.is_binary_attribute(name):
            return b64encode(raw).decode("ascii")
        try:
            return raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            return b64encode(raw).decode("ascii")


class EntryMaterializer:
    """
    Builds :py:class:`~ldapstore.models.DirectoryObject` instances from
    search results.

    Args:
        config: the store configuration
        codec: the codec used to decode values
        decode_uuid: turns a raw identifier value into its string form;
            usually :py:meth:`ldapstore.session.LdapSession.decode_entry_uuid`

    """

    def __init__(
        self,
        config: "StoreConfig",
        codec: AttributeCodec,
        decode_uuid: Callable[[bytes], str],
    ) -> None:
        self.config = config
        self.codec = codec
        self.decode_uuid = decode_uuid

    def _split_range(self, obj: DirectoryObject, name: str) -> str:
        match = RANGE_PATTERN.match(name)
        if not match:
            return name
        base_name, _, high = match.groups()
        # range=X-* means we have every value
        if high != "*":
            try:
                obj.add_ranged_attribute(base_name, int(high))
            except ValueError:
                logger.warning(
                    "ldapstore.materialize.invalid-range expression=%s", match.group(0)
                )
        return base_name

    def materialize(self, result: LDAPData, query: "DirectoryQuery") -> DirectoryObject:
        """
        Build a :py:class:`~ldapstore.models.DirectoryObject` from one
        search result.

        Args:
            result: a ``(dn, attrs)`` tuple as returned by python-ldap
            query: the query that produced ``result``

        Raises:
            MaterializationError: the result could not be parsed

        """
        entry_dn, raw_attributes = result
        try:
            dn = DirectoryDn.from_string(entry_dn)
            obj = DirectoryObject(dn=dn, rdn_attribute_name=dn.first_rdn_attr_name)
            uuid_attribute = self.config.uuid_attribute.lower()
            for raw_name, raw_values in raw_attributes.items():
                if not raw_values:
                    # The attribute is there, but has no values
                    continue
                name = self._split_range(obj, raw_name)
                is_uuid = name.lower() == uuid_attribute
                if is_uuid:
                    obj.uuid = self.decode_uuid(raw_values[0])
                    if not query.is_requested(name):
                        continue
                values = {self.codec.extract_attribute(name, raw) for raw in raw_values}
                if name.lower() == OBJECT_CLASS.lower():
                    obj.object_classes = values
                    continue
                obj.set_attribute(name, values)
                if query.is_read_only(name):
                    obj.add_read_only_attribute_name(name)
        except Exception as e:
            msg = f"Could not populate directory object {entry_dn}."
            raise MaterializationError(msg, dn=entry_dn) from e
        logger.debug("ldapstore.materialize.success dn=%s", entry_dn)
        return obj

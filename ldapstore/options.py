"""
Identity store configuration.

This module provides :py:class:`StoreConfig`, which holds the part of
``settings.LDAP_SERVERS`` an :py:class:`~ldapstore.store.LdapIdentityStore`
needs: connection blocks, the default base DN, and the vendor-specific
knobs the store consults (UUID attribute, pagination, binary attributes).
"""

from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

#: Directory vendors the store knows quirks for.
VENDOR_OTHER = "other"
VENDOR_ACTIVE_DIRECTORY = "active_directory"
VENDOR_EDIRECTORY = "edirectory"
VENDORS = (VENDOR_OTHER, VENDOR_ACTIVE_DIRECTORY, VENDOR_EDIRECTORY)

#: The attribute holding the entry identifier on most servers.
DEFAULT_UUID_ATTRIBUTE = "entryUUID"


def _get_setting(setting_name: str, default_value: Any) -> Any:
    """
    Get a ``LDAPSTORE_`` prefixed value from Django settings with fallback.
    """
    return getattr(settings, f"LDAPSTORE_{setting_name}", default_value)


class StoreConfig:
    """
    Configuration for one directory server.

    Build it from Django settings with :py:meth:`from_settings`, or directly.

    Keyword Args:
        basedn: the default search base
        connections: ``{"read": {...}, "write": {...}}`` connection blocks;
            see :py:meth:`ldapstore.session.LdapSession._connect` for the keys
        uuid_attribute: the attribute holding the directory-assigned
            identifier
        pagination: use paged searches for queries that set a limit
        binary_attributes: attributes whose values are base64 text in
            memory and raw bytes on the wire
        vendor: one of :py:data:`VENDORS`
        edirectory_guid: on eDirectory, decode the ``GUID`` attribute as
            a binary UUID
        allow_rename_fallback: on a naming collision, retry a rename with a
            disambiguated RDN value instead of failing

    """

    def __init__(
        self,
        basedn: str,
        connections: dict[str, dict[str, Any]] | None = None,
        uuid_attribute: str = DEFAULT_UUID_ATTRIBUTE,
        pagination: bool = False,
        binary_attributes: list[str] | None = None,
        vendor: str = VENDOR_OTHER,
        edirectory_guid: bool = False,
        allow_rename_fallback: bool = True,
    ) -> None:
        if vendor not in VENDORS:
            msg = f"Unknown directory vendor '{vendor}'; expected one of {VENDORS}"
            raise ImproperlyConfigured(msg)
        self.basedn = basedn
        self.connections: dict[str, dict[str, Any]] = connections or {}
        self.uuid_attribute = uuid_attribute
        self.pagination = pagination
        self.binary_attributes: set[str] = set(binary_attributes or [])
        self.vendor = vendor
        self.edirectory_guid = edirectory_guid
        self.allow_rename_fallback = allow_rename_fallback

    @classmethod
    def from_settings(cls, server_key: str = "default") -> "StoreConfig":
        """
        Build a :py:class:`StoreConfig` from ``settings.LDAP_SERVERS[server_key]``.

        Args:
            server_key: the key into ``settings.LDAP_SERVERS``

        Raises:
            ImproperlyConfigured: ``LDAP_SERVERS`` or ``server_key`` is
                missing, or the server has no ``basedn``

        """
        try:
            config = settings.LDAP_SERVERS[server_key]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{server_key}'"
            raise ImproperlyConfigured(msg) from e
        try:
            basedn = config["basedn"]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{server_key}'] has no 'basedn' key"
            raise ImproperlyConfigured(msg) from e
        return cls(
            basedn,
            connections={
                key: config[key] for key in ("read", "write") if key in config
            },
            uuid_attribute=config.get(
                "uuid_attribute", _get_setting("UUID_ATTRIBUTE", DEFAULT_UUID_ATTRIBUTE)
            ),
            pagination=config.get("pagination", _get_setting("PAGINATION", False)),
            binary_attributes=config.get("binary_attributes", []),
            vendor=config.get("vendor", VENDOR_OTHER),
            edirectory_guid=config.get("edirectory_guid", False),
            allow_rename_fallback=config.get(
                "allow_rename_fallback", _get_setting("ALLOW_RENAME_FALLBACK", True)
            ),
        )

    @property
    def is_active_directory(self) -> bool:
        return self.vendor == VENDOR_ACTIVE_DIRECTORY

    @property
    def is_edirectory(self) -> bool:
        return self.vendor == VENDOR_EDIRECTORY

    @property
    def is_object_guid(self) -> bool:
        """``True`` when identifiers are Active Directory ``objectGUID`` values."""
        return self.uuid_attribute.lower() == "objectguid"

    def is_binary_attribute(self, name: str) -> bool:
        return name.lower() in {attr.lower() for attr in self.binary_attributes}

    def connection(self, key: str) -> dict[str, Any]:
        """
        Return the ``read`` or ``write`` connection block.

        Raises:
            ImproperlyConfigured: there is no such block

        """
        try:
            return self.connections[key]
        except KeyError as e:
            msg = f"No '{key}' connection is configured for {self.basedn}"
            raise ImproperlyConfigured(msg) from e

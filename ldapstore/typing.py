"""
Type definitions for the identity store.

Aliases for the python-ldap data shapes we pass to and receive from the
directory session, using Python 3.10+ type hinting conventions.
"""

AttributeValues = list[bytes]
AddModlistEntry = tuple[str, AttributeValues]
AddModlist = list[AddModlistEntry]
ModifyModListEntry = tuple[int, str, AttributeValues | None]
ModifyModList = list[ModifyModListEntry]
LDAPData = tuple[str, dict[str, list[bytes]]]
#: One (RDN) component of a DN: ``((attr, value), ...)``
RDN = tuple[tuple[str, str], ...]

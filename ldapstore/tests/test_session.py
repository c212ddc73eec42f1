# mypy: disable-error-code="attr-defined"
"""
Tests for ldapstore.session.LdapSession.

Most of these use python-ldap-faker to stand in for the directory server;
the error mapping tests hand the session a MagicMock connection instead.
"""

import unittest
import uuid
from unittest.mock import MagicMock

import ldap
import pytest
from ldap.controls import LDAPControl
from ldap_faker.unittest import LDAPFakerMixin

from ldapstore.exceptions import AuthenticationError, IdentityStoreError, ModifyOutcome
from ldapstore.options import StoreConfig
from ldapstore.query import DirectoryQuery
from ldapstore.session import (
    LdapSession,
    OperationDecorator,
    atomic,
    decode_object_guid,
    encode_object_guid,
)

CONNECTION = {
    "url": "ldap://localhost:389",
    "user": "cn=admin,dc=example,dc=com",
    "password": "admin",
    "use_starttls": False,
    "tls_verify": "never",
    "timeout": 15.0,
    "sizelimit": 1000,
    "follow_referrals": False,
}

ALICE_UUID = "6b3a2b4e-0d52-4c1d-8f3e-2a7c9e1f0a11"
GUID = uuid.UUID("01234567-89ab-cdef-0123-456789abcdef")


def make_config(**kwargs):
    return StoreConfig(
        "dc=example,dc=com",
        connections={"read": CONNECTION, "write": CONNECTION},
        **kwargs,
    )


class TestLdapSessionWithFaker(LDAPFakerMixin, unittest.TestCase):
    """Test LdapSession against python-ldap-faker."""

    ldap_modules = ["ldapstore"]

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.test_objects = [
            (
                "cn=admin,dc=example,dc=com",
                {
                    "cn": [b"admin"],
                    "userPassword": [b"admin"],
                    "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
                },
            ),
            (
                "ou=people,dc=example,dc=com",
                {
                    "ou": [b"people"],
                    "objectclass": [b"organizationalUnit", b"top"],
                },
            ),
            (
                "uid=alice,ou=people,dc=example,dc=com",
                {
                    "uid": [b"alice"],
                    "cn": [b"Alice Johnson"],
                    "sn": [b"Johnson"],
                    "entryUUID": [ALICE_UUID.encode()],
                    "userPassword": [b"password"],
                    "objectclass": [b"inetOrgPerson", b"top"],
                },
            ),
            (
                "uid=bob,ou=people,dc=example,dc=com",
                {
                    "uid": [b"bob"],
                    "cn": [b"Bob Smith"],
                    "sn": [b"Smith"],
                    "userPassword": [b"password"],
                    "objectclass": [b"inetOrgPerson", b"top"],
                },
            ),
            (
                "uid=charlie,ou=people,dc=example,dc=com",
                {
                    "uid": [b"charlie"],
                    "cn": [b"Charlie Brown"],
                    "sn": [b"Brown"],
                    "userPassword": [b"password"],
                    "objectclass": [b"inetOrgPerson", b"top"],
                },
            ),
            (
                "cn=developers,dc=example,dc=com",
                {
                    "cn": [b"developers"],
                    "gidNumber": [b"2001"],
                    "memberUid": [b"alice", b"bob"],
                    "objectclass": [b"posixGroup", b"top"],
                },
            ),
        ]

    def setUp(self):
        super().setUp()
        if not hasattr(self, "ldap_faker"):
            LDAPFakerMixin.setUp(self)
        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in self.test_objects:
            self.server_factory.default.register_object((dn, attrs))
        self.session = LdapSession(make_config())

    def test_connection_management(self):
        self.assertFalse(self.session.has_connection())
        self.session.connect("read")
        self.assertTrue(self.session.has_connection())
        self.assertIsNotNone(self.session.connection)
        self.session.disconnect()
        self.assertFalse(self.session.has_connection())

    def test_atomic_reuses_connection(self):
        self.session.connect("read")
        try:
            connection = self.session.connection
            self.session.search("dc=example,dc=com", "(uid=alice)", ["uid"])
            self.assertIs(self.session.connection, connection)
        finally:
            self.session.disconnect()
        self.assertFalse(self.session.has_connection())

    def test_invalid_tls_verify(self):
        session = LdapSession(
            StoreConfig(
                "dc=example,dc=com",
                connections={"read": {**CONNECTION, "tls_verify": "sometimes"}},
            )
        )
        with pytest.raises(ValueError):
            session.connect("read")

    def test_missing_tls_file(self):
        session = LdapSession(
            StoreConfig(
                "dc=example,dc=com",
                connections={
                    "read": {**CONNECTION, "tls_ca_certfile": "/nonexistent/ca.pem"}
                },
            )
        )
        with pytest.raises(OSError, match="tls_ca_certfile"):
            session.connect("read")

    def test_search(self):
        results = self.session.search(
            "ou=people,dc=example,dc=com", "(objectClass=inetOrgPerson)", ["uid", "cn"]
        )
        uids = sorted(attrs["uid"][0].decode() for _, attrs in results)
        self.assertEqual(uids, ["alice", "bob", "charlie"])

    def test_search_base_scope(self):
        results = self.session.search(
            "uid=alice,ou=people,dc=example,dc=com",
            "(objectClass=*)",
            ["uid"],
            ldap.SCOPE_BASE,
        )
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0][1]["uid"], [b"alice"])

    def test_search_paginated(self):
        query = DirectoryQuery(
            "ou=people,dc=example,dc=com",
            object_classes=["inetOrgPerson"],
            returning_attributes=["uid"],
            limit=2,
        )
        seen = set()
        pages = 0
        while query.pagination_context.has_next_page and pages < 5:
            results = self.session.search_paginated(
                query.search_dn, "(objectClass=inetOrgPerson)", query
            )
            seen.update(dn for dn, _ in results)
            pages += 1
        self.assertEqual(len(seen), 3)
        self.assertFalse(query.pagination_context.has_next_page)

        query.pagination_context.reset()
        self.assertTrue(query.pagination_context.has_next_page)
        results = self.session.search_paginated(
            query.search_dn, "(objectClass=inetOrgPerson)", query
        )
        self.assertTrue(results)
        self.assertTrue({dn for dn, _ in results} <= seen)

    def test_lookup_by_id(self):
        result = self.session.lookup_by_id(
            "dc=example,dc=com", ALICE_UUID, ["uid", "entryUUID"]
        )
        self.assertIsNotNone(result)
        self.assertEqual(result[0], "uid=alice,ou=people,dc=example,dc=com")

    def test_lookup_by_id_not_found(self):
        self.assertIsNone(
            self.session.lookup_by_id("dc=example,dc=com", str(uuid.uuid4()), ["uid"])
        )

    def test_create_entry(self):
        self.session.create_entry(
            "uid=dave,ou=people,dc=example,dc=com",
            [
                ("uid", [b"dave"]),
                ("cn", [b"Dave Wilson"]),
                ("sn", [b"Wilson"]),
                ("objectclass", [b"inetOrgPerson", b"top"]),
            ],
        )
        results = self.session.search("ou=people,dc=example,dc=com", "(uid=dave)", ["cn"])
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0][1]["cn"], [b"Dave Wilson"])

    def test_create_existing_entry_fails(self):
        with pytest.raises(IdentityStoreError) as excinfo:
            self.session.create_entry(
                "uid=alice,ou=people,dc=example,dc=com",
                [("uid", [b"alice"]), ("objectclass", [b"inetOrgPerson"])],
            )
        self.assertEqual(excinfo.value.dn, "uid=alice,ou=people,dc=example,dc=com")
        self.assertIsInstance(excinfo.value.__cause__, ldap.LDAPError)

    def test_modify(self):
        dn = "uid=bob,ou=people,dc=example,dc=com"
        self.session.modify(dn, [(ldap.MOD_REPLACE, "cn", [b"Robert Smith"])])
        results = self.session.search(dn, "(objectClass=*)", ["cn"], ldap.SCOPE_BASE)
        self.assertEqual(results[0][1]["cn"], [b"Robert Smith"])

    def test_try_modify_applied(self):
        outcome = self.session.try_modify(
            "cn=developers,dc=example,dc=com",
            [(ldap.MOD_ADD, "memberUid", [b"charlie"])],
        )
        self.assertEqual(outcome, ModifyOutcome.APPLIED)

    def test_try_modify_value_already_present(self):
        outcome = self.session.try_modify(
            "cn=developers,dc=example,dc=com",
            [(ldap.MOD_ADD, "memberUid", [b"alice"])],
        )
        self.assertEqual(outcome, ModifyOutcome.ALREADY_SATISFIED)

    def test_rename(self):
        new_dn = self.session.rename(
            "uid=charlie,ou=people,dc=example,dc=com",
            "uid=chuck,ou=people,dc=example,dc=com",
        )
        self.assertEqual(new_dn, "uid=chuck,ou=people,dc=example,dc=com")
        results = self.session.search("ou=people,dc=example,dc=com", "(uid=chuck)", ["uid"])
        self.assertEqual(len(results), 1)

    def test_delete(self):
        self.session.delete("uid=charlie,ou=people,dc=example,dc=com")
        results = self.session.search(
            "ou=people,dc=example,dc=com", "(uid=charlie)", ["uid"]
        )
        self.assertEqual(results, [])

    def test_authenticate(self):
        self.session.authenticate("uid=alice,ou=people,dc=example,dc=com", "password")
        self.assertFalse(self.session.has_connection())

    def test_authenticate_wrong_password(self):
        with pytest.raises(AuthenticationError):
            self.session.authenticate("uid=alice,ou=people,dc=example,dc=com", "wrong")

    def test_authenticate_empty_password(self):
        with pytest.raises(AuthenticationError):
            self.session.authenticate("uid=alice,ou=people,dc=example,dc=com", "")


class TestLdapSessionErrors(unittest.TestCase):
    """Test how LdapSession maps directory errors, using a mock connection."""

    def setUp(self):
        self.session = LdapSession(make_config())
        self.connection = MagicMock()
        self.session.set_connection(self.connection)
        self.dn = "cn=developers,dc=example,dc=com"

    def tearDown(self):
        self.session.remove_connection()

    def test_remove_missing_value(self):
        self.connection.modify_s.side_effect = ldap.NO_SUCH_ATTRIBUTE
        outcome = self.session.try_modify(
            self.dn, [(ldap.MOD_DELETE, "member", [b"uid=zed"])]
        )
        self.assertEqual(outcome, ModifyOutcome.ALREADY_SATISFIED)

    def test_no_such_attribute_on_add_is_fatal(self):
        self.connection.modify_s.side_effect = ldap.NO_SUCH_ATTRIBUTE
        with pytest.raises(IdentityStoreError):
            self.session.try_modify(self.dn, [(ldap.MOD_ADD, "member", [b"uid=zed"])])

    def test_value_exists_on_delete_is_fatal(self):
        self.connection.modify_s.side_effect = ldap.TYPE_OR_VALUE_EXISTS
        with pytest.raises(IdentityStoreError):
            self.session.try_modify(
                self.dn, [(ldap.MOD_DELETE, "member", [b"uid=zed"])]
            )

    def test_schema_violation(self):
        for error in (
            ldap.OBJECT_CLASS_VIOLATION,
            ldap.NOT_ALLOWED_ON_RDN,
            ldap.OBJECT_CLASS_MODS_PROHIBITED,
        ):
            self.connection.modify_s.side_effect = error
            outcome = self.session.try_modify(
                self.dn, [(ldap.MOD_DELETE, "member", [b"uid=alice"])]
            )
            self.assertEqual(outcome, ModifyOutcome.SCHEMA_CONFLICT)

    def test_other_errors_are_fatal(self):
        self.connection.modify_s.side_effect = ldap.UNWILLING_TO_PERFORM
        with pytest.raises(IdentityStoreError) as excinfo:
            self.session.try_modify(
                self.dn, [(ldap.MOD_DELETE, "member", [b"uid=alice"])]
            )
        self.assertEqual(excinfo.value.dn, self.dn)

    def test_modify_wraps_errors(self):
        self.connection.modify_s.side_effect = ldap.INSUFFICIENT_ACCESS
        with pytest.raises(IdentityStoreError) as excinfo:
            self.session.modify(self.dn, [(ldap.MOD_REPLACE, "cn", [b"x"])])
        self.assertIsInstance(excinfo.value.__cause__, ldap.INSUFFICIENT_ACCESS)

    def test_modify_without_changes_does_nothing(self):
        self.session.modify(self.dn, [])
        self.connection.modify_s.assert_not_called()

    def test_modify_with_decorator_controls(self):
        control = LDAPControl("1.3.6.1.4.1.42.2.27.8.5.1", True)

        class PasswordPolicy(OperationDecorator):
            def server_controls(self):
                return [control]

        modlist = [(ldap.MOD_REPLACE, "userPassword", [b"secret"])]
        self.session.modify(self.dn, modlist, decorator=PasswordPolicy())
        self.connection.modify_ext_s.assert_called_once_with(
            self.dn, modlist, serverctrls=[control]
        )
        self.connection.modify_s.assert_not_called()

    def test_modify_with_empty_decorator(self):
        modlist = [(ldap.MOD_REPLACE, "userPassword", [b"secret"])]
        self.session.modify(self.dn, modlist, decorator=OperationDecorator())
        self.connection.modify_s.assert_called_once_with(self.dn, modlist)

    def test_rename_same_parent(self):
        new_dn = self.session.rename(
            "uid=alice,ou=people,dc=example,dc=com",
            "uid=alicia,ou=people,dc=example,dc=com",
        )
        self.assertEqual(new_dn, "uid=alicia,ou=people,dc=example,dc=com")
        self.connection.rename_s.assert_called_once_with(
            "uid=alice,ou=people,dc=example,dc=com", "uid=alicia", None
        )

    def test_rename_new_parent(self):
        self.session.rename(
            "uid=alice,ou=people,dc=example,dc=com",
            "uid=alice,ou=staff,dc=example,dc=com",
        )
        self.connection.rename_s.assert_called_once_with(
            "uid=alice,ou=people,dc=example,dc=com", "uid=alice", "ou=staff,dc=example,dc=com"
        )

    def test_rename_collision_falls_back(self):
        self.connection.rename_s.side_effect = [ldap.ALREADY_EXISTS, ldap.ALREADY_EXISTS, None]
        with self.assertLogs("ldapstore.session", level="WARNING"):
            new_dn = self.session.rename(
                "uid=jdoe,ou=people,dc=example,dc=com",
                "cn=John Doe,ou=people,dc=example,dc=com",
            )
        self.assertEqual(new_dn, "cn=John Doe1,ou=people,dc=example,dc=com")
        self.assertEqual(self.connection.rename_s.call_count, 3)
        self.assertEqual(self.connection.rename_s.call_args[0][1], "cn=John Doe1")

    def test_rename_collision_without_fallback(self):
        self.connection.rename_s.side_effect = ldap.ALREADY_EXISTS
        with pytest.raises(IdentityStoreError):
            self.session.rename(
                "uid=jdoe,ou=people,dc=example,dc=com",
                "cn=John Doe,ou=people,dc=example,dc=com",
                fallback=False,
            )
        self.assertEqual(self.connection.rename_s.call_count, 1)

    def test_rename_all_fallbacks_fail(self):
        self.connection.rename_s.side_effect = ldap.ALREADY_EXISTS
        with self.assertLogs("ldapstore.session", level="WARNING"):
            with pytest.raises(IdentityStoreError):
                self.session.rename(
                    "uid=jdoe,ou=people,dc=example,dc=com",
                    "cn=John Doe,ou=people,dc=example,dc=com",
                )
        self.assertEqual(self.connection.rename_s.call_count, 5)

    def test_search_filters_out_references(self):
        self.connection.search_s.return_value = [
            ("uid=alice,dc=example,dc=com", {"uid": [b"alice"]}),
            (None, ["ldap://other.example.com/dc=example,dc=com"]),
        ]
        results = self.session.search("dc=example,dc=com", "(uid=*)", ["uid"])
        self.assertEqual(results, [("uid=alice,dc=example,dc=com", {"uid": [b"alice"]})])

    def test_search_wraps_errors(self):
        self.connection.search_s.side_effect = ldap.NO_SUCH_OBJECT
        with pytest.raises(IdentityStoreError) as excinfo:
            self.session.search("ou=nowhere,dc=example,dc=com", "(uid=*)")
        self.assertEqual(excinfo.value.dn, "ou=nowhere,dc=example,dc=com")


class TestIdentifiers(unittest.TestCase):
    """Test identifier decoding and lookup filters for each vendor."""

    def test_plain_uuid_attribute(self):
        session = LdapSession(make_config())
        self.assertEqual(session.decode_entry_uuid(ALICE_UUID.encode()), ALICE_UUID)
        self.assertEqual(
            session.filter_by_id(ALICE_UUID),
            f"(&(entryUUID={ALICE_UUID})(objectClass=*))",
        )

    def test_object_guid(self):
        session = LdapSession(
            make_config(uuid_attribute="objectGUID", vendor="active_directory")
        )
        self.assertEqual(session.decode_entry_uuid(GUID.bytes_le), str(GUID))
        self.assertEqual(
            session.filter_by_id(str(GUID)),
            "(&(objectGUID=\\67\\45\\23\\01\\ab\\89\\ef\\cd"
            "\\01\\23\\45\\67\\89\\ab\\cd\\ef)(objectClass=*))",
        )

    def test_object_guid_helpers(self):
        self.assertEqual(decode_object_guid(encode_object_guid(str(GUID))), str(GUID))

    def test_edirectory_guid(self):
        session = LdapSession(
            make_config(uuid_attribute="GUID", vendor="edirectory", edirectory_guid=True)
        )
        self.assertEqual(session.decode_entry_uuid(GUID.bytes), str(GUID))
        self.assertEqual(
            session.filter_by_id(str(GUID)),
            "(&(GUID=\\01\\23\\45\\67\\89\\ab\\cd\\ef"
            "\\01\\23\\45\\67\\89\\ab\\cd\\ef)(objectClass=*))",
        )

    def test_lookup_non_uuid_on_active_directory(self):
        session = LdapSession(
            make_config(uuid_attribute="objectGUID", vendor="active_directory")
        )
        session.search = MagicMock()
        self.assertIsNone(session.lookup_by_id("dc=example,dc=com", "not-a-guid"))
        session.search.assert_not_called()

    def test_bad_guid_length(self):
        session = LdapSession(
            make_config(uuid_attribute="objectGUID", vendor="active_directory")
        )
        with pytest.raises(ValueError):
            session.decode_entry_uuid(b"\x01\x02")


class TestAtomic(unittest.TestCase):
    """Test the atomic decorator."""

    def test_disconnects_on_error(self):
        class Thing:
            def __init__(self):
                self.connected = False

            def has_connection(self):
                return self.connected

            def connect(self, key):
                self.connected = True
                self.key = key

            def disconnect(self):
                self.connected = False

            @atomic(key="write")
            def boom(self):
                raise RuntimeError("boom")

        thing = Thing()
        with pytest.raises(RuntimeError):
            thing.boom()
        self.assertEqual(thing.key, "write")
        self.assertFalse(thing.connected)

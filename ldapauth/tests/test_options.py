"""
Tests for configuration validation and connection option derivation.
"""

import hashlib
import tempfile
import unittest
from pathlib import Path

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from ldapauth.filters import DEFAULT_FILTER
from ldapauth.options import (
    CONFIGURATION_SCHEMA,
    MAX_CONNECTIONS,
    TEST_SCHEMA,
    ConnectionOptions,
    configure,
    read_certificate_authorities,
    validate_configuration,
    write_ca_bundle,
)

if not settings.configured:
    settings.configure()


CA_ONE = b"-----BEGIN CERTIFICATE-----\nONE\n-----END CERTIFICATE-----\n"
CA_TWO = b"-----BEGIN CERTIFICATE-----\nTWO\n-----END CERTIFICATE-----\n"


class TestValidateConfiguration(unittest.TestCase):
    """Test structural validation of raw configuration."""

    def test_minimal_configuration(self):
        validate_configuration({"uri": "ldap://host", "base": "dc=x"})

    def test_uri_required(self):
        with self.assertRaises(ImproperlyConfigured) as ctx:
            validate_configuration({"base": "dc=x"})
        self.assertIn("'uri'", str(ctx.exception))

    def test_base_required(self):
        with self.assertRaises(ImproperlyConfigured) as ctx:
            validate_configuration({"uri": "ldap://host"})
        self.assertIn("'base'", str(ctx.exception))

    def test_not_a_mapping(self):
        with self.assertRaises(ImproperlyConfigured):
            validate_configuration(["ldap://host"])

    def test_bind_requires_dn_and_password(self):
        for bind in ({"dn": "cn=svc"}, {"password": "p"}, {}):
            with self.subTest(bind=bind), self.assertRaises(ImproperlyConfigured):
                validate_configuration({"uri": "ldap://host", "base": "dc=x", "bind": bind})

    def test_bind_error_names_nested_key(self):
        with self.assertRaises(ImproperlyConfigured) as ctx:
            validate_configuration(
                {"uri": "ldap://host", "base": "dc=x", "bind": {"dn": "cn=svc"}}
            )
        self.assertEqual(
            str(ctx.exception),
            "LDAP auth configuration: bind: 'password' is a required property",
        )

    def test_error_names_offending_item(self):
        with self.assertRaises(ImproperlyConfigured) as ctx:
            validate_configuration(
                {"uri": "ldap://host", "base": "dc=x", "certificateAuthorities": ["/a", 1]}
            )
        self.assertIn("certificateAuthorities.1:", str(ctx.exception))

    def test_wrong_types(self):
        cases = [
            {"uri": 42, "base": "dc=x"},
            {"uri": "ldap://host", "base": "dc=x", "checkCertificate": "yes"},
            {"uri": "ldap://host", "base": "dc=x", "certificateAuthorities": "/ca.pem"},
            {"uri": "ldap://host", "base": "dc=x", "certificateAuthorities": [1]},
            {"uri": "ldap://host", "base": "dc=x", "timeout": True},
            {"uri": "ldap://host", "base": "dc=x", "bind": "cn=svc"},
        ]
        for raw in cases:
            with self.subTest(raw=raw), self.assertRaises(ImproperlyConfigured):
                validate_configuration(raw)

    def test_unknown_keys_are_ignored(self):
        validate_configuration({"uri": "ldap://host", "base": "dc=x", "extra": 1})

    def test_test_schema(self):
        validate_configuration({"username": "alice", "password": "secret"}, TEST_SCHEMA)
        with self.assertRaises(ImproperlyConfigured):
            validate_configuration({"username": "alice"}, TEST_SCHEMA)

    def test_schema_defaults_match(self):
        properties = CONFIGURATION_SCHEMA["properties"]
        self.assertEqual(properties["filter"]["default"], DEFAULT_FILTER)
        self.assertTrue(properties["checkCertificate"]["default"])
        self.assertEqual(CONFIGURATION_SCHEMA["required"], ["uri", "base"])


class TestConfigure(unittest.TestCase):
    """Test derivation of ConnectionOptions from raw configuration."""

    def test_defaults(self):
        resolved = configure({"uri": "ldap://host", "base": "dc=x"})
        options = resolved.options
        self.assertEqual(options.server_url, "ldap://host")
        self.assertEqual(options.max_connections, MAX_CONNECTIONS)
        self.assertEqual(options.max_connections, 5)
        self.assertTrue(options.reject_unauthorized)
        self.assertIsNone(options.service_bind_dn)
        self.assertIsNone(options.service_bind_credential)
        self.assertEqual(options.trusted_cas, ())
        self.assertIsNone(options.ca_certfile)
        self.assertEqual(options.timeout, 15.0)
        self.assertFalse(options.follow_referrals)
        self.assertFalse(options.start_tls)
        self.assertEqual(resolved.base, "dc=x")
        self.assertEqual(resolved.filter.source, DEFAULT_FILTER)
        self.assertEqual(resolved.filter.render({"name": "alice"}), "(uid=alice)")

    def test_check_certificate_disabled(self):
        resolved = configure(
            {"uri": "ldaps://host", "base": "dc=x", "checkCertificate": False}
        )
        self.assertFalse(resolved.options.reject_unauthorized)

    def test_check_certificate_enabled(self):
        resolved = configure(
            {"uri": "ldaps://host", "base": "dc=x", "checkCertificate": True}
        )
        self.assertTrue(resolved.options.reject_unauthorized)

    def test_service_bind(self):
        resolved = configure(
            {
                "uri": "ldap://host",
                "base": "dc=x",
                "bind": {"dn": "cn=svc,dc=x", "password": "p"},
            }
        )
        self.assertEqual(resolved.options.service_bind_dn, "cn=svc,dc=x")
        self.assertEqual(resolved.options.service_bind_credential, "p")
        self.assertNotIn("'p'", repr(resolved.options))

    def test_custom_filter_and_connection_settings(self):
        resolved = configure(
            {
                "uri": "ldap://host",
                "base": "dc=x",
                "filter": "(sAMAccountName={{name}})",
                "timeout": 3,
                "followReferrals": True,
                "startTls": True,
            }
        )
        self.assertEqual(resolved.filter.render({"name": "bob"}), "(sAMAccountName=bob)")
        self.assertEqual(resolved.options.timeout, 3.0)
        self.assertTrue(resolved.options.follow_referrals)
        self.assertTrue(resolved.options.start_tls)

    def test_none_values_take_defaults(self):
        resolved = configure(
            {"uri": "ldap://host", "base": "dc=x", "filter": None, "bind": None}
        )
        self.assertEqual(resolved.filter.source, DEFAULT_FILTER)
        self.assertIsNone(resolved.options.service_bind_dn)

    def test_configure_rejects_non_mapping(self):
        with self.assertRaises(ImproperlyConfigured):
            configure(["ldap://host"])

    def test_invalid_filter(self):
        with self.assertRaises(ImproperlyConfigured):
            configure({"uri": "ldap://host", "base": "dc=x", "filter": "(uid={{name}}"})

    def test_options_get_their_own_connection_slots(self):
        first = configure({"uri": "ldap://host", "base": "dc=x"}).options
        second = configure({"uri": "ldap://host", "base": "dc=x"}).options
        self.assertIsNot(first.slots, second.slots)
        self.assertEqual(first, second)

    def test_slots_bounded_by_max_connections(self):
        options = ConnectionOptions(server_url="ldap://host", max_connections=2)
        self.assertTrue(options.slots.acquire(blocking=False))
        self.assertTrue(options.slots.acquire(blocking=False))
        self.assertFalse(options.slots.acquire(blocking=False))
        options.slots.release()
        options.slots.release()


class TestCertificateAuthorities(unittest.TestCase):
    """Test CA loading and bundling."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.ca_one = Path(self.tmpdir.name) / "one.pem"
        self.ca_one.write_bytes(CA_ONE)
        self.ca_two = Path(self.tmpdir.name) / "two.pem"
        self.ca_two.write_bytes(CA_TWO)

    def test_read_certificate_authorities(self):
        cas = read_certificate_authorities([str(self.ca_one), str(self.ca_two)])
        self.assertEqual(cas, (CA_ONE, CA_TWO))

    def test_missing_file_is_fatal(self):
        missing = str(Path(self.tmpdir.name) / "missing.pem")
        with self.assertRaises(ImproperlyConfigured) as ctx:
            configure(
                {
                    "uri": "ldaps://host",
                    "base": "dc=x",
                    "certificateAuthorities": [str(self.ca_one), missing],
                }
            )
        self.assertIsInstance(ctx.exception.__cause__, OSError)

    def test_configure_reads_and_bundles(self):
        resolved = configure(
            {
                "uri": "ldaps://host",
                "base": "dc=x",
                "certificateAuthorities": [str(self.ca_one), str(self.ca_two)],
            }
        )
        options = resolved.options
        self.assertEqual(options.trusted_cas, (CA_ONE, CA_TWO))
        self.assertIsNotNone(options.ca_certfile)
        self.addCleanup(Path(options.ca_certfile).unlink, missing_ok=True)
        bundle = Path(options.ca_certfile).read_bytes()
        self.assertIn(CA_ONE.strip(), bundle)
        self.assertIn(CA_TWO.strip(), bundle)

    def test_bundle_reused_for_same_contents(self):
        same = write_ca_bundle((CA_ONE,), directory=self.tmpdir.name)
        again = write_ca_bundle((CA_ONE,), directory=self.tmpdir.name)
        other = write_ca_bundle((CA_TWO,), directory=self.tmpdir.name)
        self.assertEqual(same, again)
        self.assertNotEqual(same, other)
        self.assertEqual(Path(other).read_bytes(), CA_TWO)

    def test_bundle_is_private(self):
        bundle = Path(write_ca_bundle((CA_ONE,), directory=self.tmpdir.name))
        self.assertEqual(bundle.parent, Path(self.tmpdir.name))
        self.assertFalse(bundle.is_symlink())
        self.assertEqual(bundle.stat().st_mode & 0o777, 0o600)

    def test_bundle_ignores_files_planted_in_advance(self):
        data = CA_TWO.strip() + b"\n"
        digest = hashlib.sha256(data).hexdigest()
        victim = Path(self.tmpdir.name) / "victim.pem"
        victim.write_bytes(b"original")
        planted = []
        for name in (f"ldapauth-ca-{digest[:16]}.pem", f"ldapauth-ca-{digest}.pem"):
            link = Path(self.tmpdir.name) / name
            link.symlink_to(victim)
            planted.append(str(link))
        bundle = write_ca_bundle((CA_TWO,), directory=self.tmpdir.name)
        self.assertNotIn(bundle, planted)
        self.assertFalse(Path(bundle).is_symlink())
        self.assertEqual(Path(bundle).read_bytes(), data)
        self.assertEqual(victim.read_bytes(), b"original")

    def test_bundle_rewritten_if_removed(self):
        first = write_ca_bundle((CA_ONE,), directory=self.tmpdir.name)
        Path(first).unlink()
        second = write_ca_bundle((CA_ONE,), directory=self.tmpdir.name)
        self.assertTrue(Path(second).is_file())


if __name__ == "__main__":
    unittest.main()

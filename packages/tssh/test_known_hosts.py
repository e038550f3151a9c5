"""Unit tests for the known_hosts trust store."""

import json
import os
import stat
import threading

import pytest

from tssh.audit import SecurityAuditLogger
from tssh.conftest import ScriptedPrompter, make_host_key
from tssh.exceptions import HostKeyStoreUnavailable
from tssh.known_hosts import (
    KNOWN_HOSTS_HEADER,
    EphemeralTrustVerifier,
    HostTrustStore,
    InsecureHostKeyVerifier,
    KnownHostsFile,
    KnownHostsFormatError,
    TrustLockTable,
    TrustState,
    VerificationState,
    build_host_key_verifier,
    build_insecure_verifier,
    canonical_address,
    hash_hostname,
    normalize_address,
    parse_line,
)
from tssh_shared.secure_files import SecureFileManager


@pytest.fixture
def known_hosts(home):
    return home / ".ssh" / "known_hosts"


def write_lines(path, *lines):
    path.write_text("".join(line + "\n" for line in lines))
    os.chmod(path, 0o600)


def open_store(path, prompter=None, stream=None, audit=None):
    return HostTrustStore.open(path, prompter=prompter, stream=stream, audit=audit)


def record_lines(path):
    return [line for line in path.read_text().splitlines() if line and not line.startswith("#")]


class TestAddressCanonicalization:
    """Tests for host address normalization."""

    @pytest.mark.parametrize("address, expected", [
        ("Example.COM", "example.com"),
        ("example.com:22", "example.com"),
        ("[example.com]:22", "example.com"),
        ("[example.com]", "example.com"),
        ("example.com:2222", "[example.com]:2222"),
        ("[Example.com]:2222", "[example.com]:2222"),
        ("fe80::1", "fe80::1"),
        ("[fe80::1]", "fe80::1"),
        ("[fe80::1]:22", "fe80::1"),
        ("[fe80::1]:2200", "[fe80::1]:2200"),
        ("*.example.com", "*.example.com"),
    ])
    def test_normalize(self, address, expected):
        assert normalize_address(address) == expected

    def test_canonical_address(self):
        assert canonical_address("Host", 22) == "host"
        assert canonical_address("host", 2222) == "[host]:2222"
        assert canonical_address("[::1]", 22) == "::1"


class TestParseLine:
    """Tests for the known_hosts line grammar."""

    def test_blank_and_comment(self):
        assert parse_line("") is None
        assert parse_line("   ") is None
        assert parse_line("# comment") is None

    def test_plain_record(self, host_key):
        record = parse_line(f"a.example,b.example {host_key.to_openssh()} comment here", 3)
        assert record.patterns == ("a.example", "b.example")
        assert record.key_type == "ssh-ed25519"
        assert record.line_number == 3
        assert record.marker is None

    def test_markers(self, host_key):
        assert parse_line(f"@revoked * {host_key.to_openssh()}").marker == "revoked"
        assert parse_line(f"@cert-authority *.example {host_key.to_openssh()}").marker == "cert-authority"

    def test_unknown_marker(self, host_key):
        with pytest.raises(KnownHostsFormatError):
            parse_line(f"@bogus host {host_key.to_openssh()}")

    def test_missing_fields(self):
        with pytest.raises(KnownHostsFormatError):
            parse_line("host ssh-ed25519")

    def test_bad_key(self):
        with pytest.raises(KnownHostsFormatError):
            parse_line("host ssh-ed25519 AAAA!!!!")


class TestLookup:
    """Tests for trust decisions on a known_hosts file."""

    def test_unknown(self, known_hosts, host_key):
        write_lines(known_hosts, KNOWN_HOSTS_HEADER)
        decision = KnownHostsFile(known_hosts).lookup("server", host_key)
        assert decision.state == TrustState.UNKNOWN
        assert decision.known == []

    def test_missing_file_is_unknown(self, known_hosts, host_key):
        assert KnownHostsFile(known_hosts).lookup("server", host_key).state == TrustState.UNKNOWN

    def test_match(self, known_hosts, host_key):
        write_lines(known_hosts, f"server {host_key.to_openssh()}")
        decision = KnownHostsFile(known_hosts).lookup("server", host_key)
        assert decision.state == TrustState.MATCH
        assert decision.locations == [f"{known_hosts}:1"]

    def test_match_case_insensitive(self, known_hosts, host_key):
        write_lines(known_hosts, f"Server.Example {host_key.to_openssh()}")
        assert KnownHostsFile(known_hosts).lookup("server.example", host_key).state == TrustState.MATCH

    def test_changed_same_type(self, known_hosts, host_key):
        old = make_host_key()
        write_lines(known_hosts, KNOWN_HOSTS_HEADER, f"server {old.to_openssh()}")
        decision = KnownHostsFile(known_hosts).lookup("server", host_key)
        assert decision.state == TrustState.CHANGED
        assert decision.known_fingerprints == [old.fingerprint()]
        assert decision.presented == host_key
        assert decision.locations == [f"{known_hosts}:2"]

    def test_changed_other_type_only(self, known_hosts, host_key):
        """A host known only by another key type is treated as changed."""
        write_lines(known_hosts, f"server {make_host_key('ecdsa').to_openssh()}")
        assert KnownHostsFile(known_hosts).lookup("server", host_key).state == TrustState.CHANGED

    def test_match_among_several_types(self, known_hosts, host_key):
        write_lines(
            known_hosts,
            f"server {make_host_key('ecdsa').to_openssh()}",
            f"server {host_key.to_openssh()}",
        )
        assert KnownHostsFile(known_hosts).lookup("server", host_key).state == TrustState.MATCH

    def test_revoked(self, known_hosts, host_key):
        write_lines(known_hosts, f"server {host_key.to_openssh()}", f"@revoked * {host_key.to_openssh()}")
        decision = KnownHostsFile(known_hosts).lookup("server", host_key)
        assert decision.state == TrustState.REVOKED

    def test_cert_authority_ignored(self, known_hosts, host_key):
        write_lines(known_hosts, f"@cert-authority * {host_key.to_openssh()}")
        assert KnownHostsFile(known_hosts).lookup("server", host_key).state == TrustState.UNKNOWN

    def test_hashed_host(self, known_hosts, host_key):
        hashed = hash_hostname("server.example", b"0123456789abcdefghij")
        write_lines(known_hosts, f"{hashed} {host_key.to_openssh()}")
        file = KnownHostsFile(known_hosts)
        assert file.lookup("server.example", host_key).state == TrustState.MATCH
        assert file.lookup("other.example", host_key).state == TrustState.UNKNOWN

    def test_wildcards(self, known_hosts, host_key):
        write_lines(known_hosts, f"*.example.com,build-? {host_key.to_openssh()}")
        file = KnownHostsFile(known_hosts)
        assert file.lookup("web.example.com", host_key).state == TrustState.MATCH
        assert file.lookup("build-1", host_key).state == TrustState.MATCH
        assert file.lookup("build-10", host_key).state == TrustState.UNKNOWN

    def test_negation(self, known_hosts, host_key):
        write_lines(known_hosts, f"*.example.com,!db.example.com {host_key.to_openssh()}")
        file = KnownHostsFile(known_hosts)
        assert file.lookup("web.example.com", host_key).state == TrustState.MATCH
        assert file.lookup("db.example.com", host_key).state == TrustState.UNKNOWN

    def test_non_default_port(self, known_hosts, host_key):
        write_lines(known_hosts, f"[server]:2222 {host_key.to_openssh()}")
        file = KnownHostsFile(known_hosts)
        assert file.lookup("[server]:2222", host_key).state == TrustState.MATCH
        assert file.lookup("server:2222", host_key).state == TrustState.MATCH
        assert file.lookup("server", host_key).state == TrustState.UNKNOWN

    def test_malformed_lines_skipped(self, known_hosts, host_key):
        write_lines(known_hosts, "garbage", "host ssh-ed25519 !!!", f"server {host_key.to_openssh()}")
        decision = KnownHostsFile(known_hosts).lookup("server", host_key)
        assert decision.state == TrustState.MATCH
        assert decision.known[0].line_number == 3

    def test_known_key_types(self, known_hosts, host_key):
        write_lines(
            known_hosts,
            f"server {make_host_key('ecdsa').to_openssh()}",
            f"server {host_key.to_openssh()}",
            f"other {make_host_key('rsa').to_openssh()}",
            f"@revoked server {make_host_key('rsa').to_openssh()}",
        )
        assert KnownHostsFile(known_hosts).known_key_types("server") == ["ecdsa-sha2-nistp256", "ssh-ed25519"]


class TestTrustLockTable:
    """Tests for per-file lock sharing."""

    def test_same_file_same_locks(self, known_hosts):
        table = TrustLockTable()
        locks = table.for_path(known_hosts)
        assert table.for_path(known_hosts.parent / "." / known_hosts.name) is locks
        assert table.for_path(str(known_hosts)) is locks

    def test_other_file_other_locks(self, known_hosts):
        table = TrustLockTable()
        assert table.for_path(known_hosts) is not table.for_path(known_hosts.with_name("other_hosts"))

    def test_tables_are_independent(self, known_hosts):
        assert TrustLockTable().for_path(known_hosts) is not TrustLockTable().for_path(known_hosts)


class TestOpen:
    """Tests for preparing the store on disk."""

    def test_creates_directory_and_file(self, tmp_path):
        path = tmp_path / "fresh" / ".ssh" / "known_hosts"
        open_store(path)
        assert stat.S_IMODE(os.stat(path.parent).st_mode) == 0o700
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert path.read_text() == KNOWN_HOSTS_HEADER + "\n"

    def test_repairs_existing_permissions(self, known_hosts, host_key):
        write_lines(known_hosts, f"server {host_key.to_openssh()}")
        os.chmod(known_hosts, 0o644)
        open_store(known_hosts)
        assert stat.S_IMODE(os.stat(known_hosts).st_mode) == 0o600
        assert record_lines(known_hosts) == [f"server {host_key.to_openssh()}"]

    def test_concurrent_open_creates_once(self, tmp_path):
        """Opening one fresh path from several threads never degrades any of them."""
        path = tmp_path / ".ssh" / "known_hosts"
        locks = TrustLockTable().for_path(path)
        stores, errors = [], []

        def worker():
            try:
                stores.append(HostTrustStore.open(path, locks=locks))
            except HostKeyStoreUnavailable as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(stores) == 4
        assert path.read_text() == KNOWN_HOSTS_HEADER + "\n"

    def test_file_created_by_another_process(self, known_hosts):
        """Losing the exclusive create to another writer reuses that file."""
        class RacingManager(SecureFileManager):
            def create(self, path, mode=0o600):
                path.write_text("")
                os.chmod(path, 0o644)
                raise FileExistsError(path)

        HostTrustStore.open(known_hosts, file_manager=RacingManager())
        assert stat.S_IMODE(os.stat(known_hosts).st_mode) == 0o600

    def test_unusable_location(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        with pytest.raises(HostKeyStoreUnavailable) as exc:
            open_store(blocker / "known_hosts")
        assert exc.value.path == str(blocker / "known_hosts")


class TestVerify:
    """Tests for the trust-on-first-use state machine."""

    def test_known_host_no_prompt(self, known_hosts, host_key, stream):
        write_lines(known_hosts, f"server {host_key.to_openssh()}")
        prompter = ScriptedPrompter()
        result = open_store(known_hosts, prompter, stream).verify("server", host_key)
        assert result.state == VerificationState.ACCEPTED
        assert prompter.prompts == []

    def test_yes_accepts_and_persists(self, known_hosts, host_key, stream):
        prompter = ScriptedPrompter(["yes"])
        store = open_store(known_hosts, prompter, stream)
        result = store.verify("Server:22", host_key)
        assert result.accepted
        assert result.persisted
        assert result.decision.state == TrustState.UNKNOWN
        assert record_lines(known_hosts) == [f"server {host_key.to_openssh()}"]
        assert "can't be established" in stream.getvalue()
        assert "Permanently added 'server'" in stream.getvalue()

    def test_second_verify_is_silent(self, known_hosts, host_key, stream):
        prompter = ScriptedPrompter(["yes"])
        store = open_store(known_hosts, prompter, stream)
        store.verify("server", host_key)
        result = store.verify("server", host_key)
        assert result.accepted
        assert len(prompter.prompts) == 1

    def test_non_default_port_persisted_bracketed(self, known_hosts, host_key, stream):
        store = open_store(known_hosts, ScriptedPrompter(["yes"]), stream)
        store.verify("server:2222", host_key)
        assert record_lines(known_hosts) == [f"[server]:2222 {host_key.to_openssh()}"]

    @pytest.mark.parametrize("answer", ["no", "", "y", "YES please"])
    def test_anything_but_yes_rejects(self, known_hosts, host_key, stream, answer):
        result = open_store(known_hosts, ScriptedPrompter([answer]), stream).verify("server", host_key)
        assert result.state == VerificationState.REJECTED
        assert record_lines(known_hosts) == []

    def test_yes_is_case_insensitive(self, known_hosts, host_key, stream):
        assert open_store(known_hosts, ScriptedPrompter([" YES "]), stream).verify("server", host_key).accepted

    def test_fingerprint_reprompts(self, known_hosts, host_key, stream):
        prompter = ScriptedPrompter(["fingerprint", "fingerprint", "yes"])
        result = open_store(known_hosts, prompter, stream).verify("server", host_key)
        assert result.accepted
        assert len(prompter.prompts) == 3
        assert stream.getvalue().count(host_key.fingerprint_md5()) == 2

    def test_read_error_rejects(self, known_hosts, host_key, stream):
        prompter = ScriptedPrompter([OSError("terminal gone")])
        result = open_store(known_hosts, prompter, stream).verify("server", host_key)
        assert result.state == VerificationState.REJECTED
        assert "terminal gone" in result.reason

    def test_eof_rejects(self, known_hosts, host_key, stream):
        result = open_store(known_hosts, ScriptedPrompter([]), stream).verify("server", host_key)
        assert result.state == VerificationState.REJECTED

    def test_no_prompter_rejects(self, known_hosts, host_key, stream):
        result = open_store(known_hosts, None, stream).verify("server", host_key)
        assert result.state == VerificationState.REJECTED

    def test_changed_key_rejected_without_prompt(self, known_hosts, host_key, stream):
        old = make_host_key()
        write_lines(known_hosts, KNOWN_HOSTS_HEADER, f"server {old.to_openssh()}")
        prompter = ScriptedPrompter(["yes"])
        result = open_store(known_hosts, prompter, stream).verify("server", host_key)

        assert result.state == VerificationState.REJECTED
        assert result.decision.state == TrustState.CHANGED
        assert prompter.prompts == []
        warning = stream.getvalue()
        assert "REMOTE HOST IDENTIFICATION HAS CHANGED" in warning
        assert old.fingerprint() in warning
        assert host_key.fingerprint() in warning
        assert f"Offending key in {known_hosts}:2" in warning
        assert record_lines(known_hosts) == [f"server {old.to_openssh()}"]

    def test_revoked_key_rejected(self, known_hosts, host_key, stream):
        write_lines(known_hosts, f"@revoked server {host_key.to_openssh()}")
        prompter = ScriptedPrompter(["yes"])
        result = open_store(known_hosts, prompter, stream).verify("server", host_key)
        assert result.state == VerificationState.REJECTED
        assert result.decision.state == TrustState.REVOKED
        assert "REVOKED HOST KEY" in stream.getvalue()
        assert prompter.prompts == []

    def test_persist_failure_still_accepts(self, known_hosts, host_key, stream):
        store = open_store(known_hosts, ScriptedPrompter(["yes"]), stream)

        def broken(path, mode):
            raise OSError("disk full")

        store.file_manager.create_for_append = broken
        result = store.verify("server", host_key)
        assert result.accepted
        assert not result.persisted

    def test_appends_after_missing_newline(self, known_hosts, host_key, stream):
        other = make_host_key()
        known_hosts.write_text(f"other {other.to_openssh()}")
        os.chmod(known_hosts, 0o600)
        open_store(known_hosts, ScriptedPrompter(["yes"]), stream).verify("server", host_key)
        assert record_lines(known_hosts) == [f"other {other.to_openssh()}", f"server {host_key.to_openssh()}"]

    def test_persist_never_duplicates(self, known_hosts, host_key, stream):
        store = open_store(known_hosts, None, stream)
        assert store._persist("server", host_key)
        assert store._persist("server", host_key)
        assert len(record_lines(known_hosts)) == 1

    def test_concurrent_acceptance_single_record(self, known_hosts, host_key, stream):
        """Parallel verifications of one new host prompt once and write one line."""
        prompter = ScriptedPrompter(["yes"])
        store = open_store(known_hosts, prompter, stream)
        results = []

        def worker():
            results.append(store.verify("server", host_key))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.accepted for r in results)
        assert len(prompter.prompts) == 1
        assert record_lines(known_hosts) == [f"server {host_key.to_openssh()}"]

    def test_separate_stores_share_locks(self, known_hosts, host_key, stream):
        """Stores built per connection on one file coordinate through shared locks."""
        prompter = ScriptedPrompter(["yes", "yes"], delay=0.2)
        table = TrustLockTable()
        stores = [
            HostTrustStore.open(known_hosts, prompter=prompter, stream=stream, locks=table.for_path(known_hosts))
            for _ in range(2)
        ]
        results = []

        threads = [threading.Thread(target=lambda s=s: results.append(s.verify("server", host_key)))
                   for s in stores]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.accepted for r in results)
        assert len(prompter.prompts) == 1
        assert record_lines(known_hosts) == [f"server {host_key.to_openssh()}"]

    def test_known_key_types(self, known_hosts, host_key):
        write_lines(known_hosts, f"[server]:2222 {host_key.to_openssh()}")
        store = open_store(known_hosts)
        assert store.known_key_types("server:2222") == ["ssh-ed25519"]
        assert store.known_key_types("server") == []


class TestAuditTrail:
    """Tests for audit records of trust decisions."""

    @pytest.fixture
    def audit(self, tmp_path):
        audit = SecurityAuditLogger.open(tmp_path / "audit.log")
        yield audit
        audit.close()

    def events(self, audit):
        return [json.loads(line) for line in audit.path.read_text().splitlines()]

    def test_accept_and_known(self, known_hosts, host_key, stream, audit):
        store = open_store(known_hosts, ScriptedPrompter(["yes"]), stream, audit)
        store.verify("server", host_key, user="alice")
        store.verify("server", host_key, user="alice")
        actions = [e["action"] for e in self.events(audit) if e["event_type"] == "HOST_KEY_VERIFICATION"]
        assert actions == ["new_host_accepted", "known_host"]
        assert any(e["event_type"] == "FILE_OPERATION" for e in self.events(audit))

    def test_changed_logged_high(self, known_hosts, host_key, stream, audit):
        write_lines(known_hosts, f"server {make_host_key().to_openssh()}")
        open_store(known_hosts, None, stream, audit).verify("server", host_key, user="alice")
        failures = [e for e in self.events(audit) if e.get("action") == "verification_failed"]
        assert len(failures) == 1
        assert failures[0]["severity"] == "HIGH"
        assert failures[0]["success"] is False
        assert failures[0]["user"] == "alice"


class TestDegradedVerifiers:
    """Tests for the ephemeral and insecure verifiers."""

    def test_builder_returns_store(self, known_hosts):
        assert isinstance(build_host_key_verifier(known_hosts), HostTrustStore)

    def test_builder_degrades(self, tmp_path, stream):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        verifier = build_host_key_verifier(blocker / "known_hosts", stream=stream)
        assert isinstance(verifier, EphemeralTrustVerifier)
        assert not verifier.persistent

    def test_ephemeral_prompts_every_time(self, host_key, stream):
        prompter = ScriptedPrompter(["yes", "yes"])
        verifier = EphemeralTrustVerifier(prompter=prompter, stream=stream)
        assert verifier.verify("server", host_key).accepted
        second = verifier.verify("server", host_key)
        assert second.accepted
        assert not second.persisted
        assert len(prompter.prompts) == 2

    def test_ephemeral_rejects(self, host_key, stream):
        verifier = EphemeralTrustVerifier(prompter=ScriptedPrompter(["no"]), stream=stream)
        assert verifier.verify("server", host_key).state == VerificationState.REJECTED

    def test_insecure_accepts_anything(self, host_key, stream, tmp_path):
        audit = SecurityAuditLogger.open(tmp_path / "audit.log")
        verifier = build_insecure_verifier("server", "alice", audit, stream)
        assert isinstance(verifier, InsecureHostKeyVerifier)
        assert verifier.verify("server", host_key).accepted
        audit.close()

        events = [json.loads(line) for line in (tmp_path / "audit.log").read_text().splitlines()]
        bypass = [e for e in events if e["event_type"] == "HOST_KEY_BYPASS"]
        assert len(bypass) == 1
        assert bypass[0]["severity"] == "HIGH"
        assert any(e.get("action") == "insecure_skip" for e in events)
        assert "HOST KEY VERIFICATION IS DISABLED" in stream.getvalue()

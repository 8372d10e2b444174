"""Unit tests for auth/service.py -- AuthService.

Covers:
- register(): required-field and shape validation with per-field messages,
  duplicate detection, reservation released when a later step fails,
  a retried account write whose first commit went through
- login(): success opens a session; unknown email and wrong password raise
  the same InvalidCredentials and both run a bcrypt verify
- login() upgrades a record hashed at an older cost
- logout() / authenticate() lifecycle, including tolerated missing tokens
- run_maintenance() sweeps sessions and reservations together
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import (
    DuplicateError,
    InvalidCredentials,
    SessionNotFound,
    SessionRevoked,
    StorageUnavailable,
    ValidationError,
)
from auth.passwords import PasswordHasher


def _register_alice(service):
    return service.register("alice", "alice@x.com", "+15550100", "pw12345")


class TestRegisterValidation:
    def test_all_blank(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.register("", "  ", None, "")
        assert exc_info.value.message == "All fields are required."
        assert set(exc_info.value.field_errors) == {"username", "email", "phone_number", "password"}

    def test_single_missing_field(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.register("alice", "alice@x.com", "", "pw12345")
        assert list(exc_info.value.field_errors) == ["phone_number"]

    @pytest.mark.parametrize(
        "username,email,password,field",
        [
            ("al ice", "alice@x.com", "pw12345", "username"),
            ("alice", "not-an-email", "pw12345", "email"),
            ("alice", "alice@x.com", "pw1", "password"),
        ],
    )
    def test_bad_shape(self, service, username, email, password, field):
        with pytest.raises(ValidationError) as exc_info:
            service.register(username, email, "+1555", password)
        assert field in exc_info.value.field_errors

    def test_validation_touches_no_storage(self, service):
        with pytest.raises(ValidationError):
            service.register("alice", "alice@x.com", "+1555", "pw1")
        assert service.accounts.find_by_email("alice@x.com") is None
        _register_alice(service)

    def test_min_length_configurable(self, make_service):
        svc = make_service()
        svc.password_min_length = 10
        with pytest.raises(ValidationError) as exc_info:
            svc.register("alice", "alice@x.com", "+1555", "pw12345")
        assert "10" in exc_info.value.field_errors["password"]


class TestRegister:
    def test_success(self, service):
        account = _register_alice(service)
        assert account.username == "alice"
        assert account.phone_number == "+15550100"
        assert service.hasher.verify("pw12345", account.password)

    def test_duplicate_email_case_insensitive(self, service):
        _register_alice(service)
        with pytest.raises(DuplicateError) as exc_info:
            service.register("alice2", "ALICE@X.COM", "+1555", "pw12345")
        assert exc_info.value.message == "Username or email is already in use."

    def test_duplicate_username(self, service):
        _register_alice(service)
        with pytest.raises(DuplicateError):
            service.register("alice", "other@x.com", "+1555", "pw12345")

    def test_reservation_released_when_hashing_fails(self, service, monkeypatch):
        def boom(plaintext):
            raise RuntimeError("hasher exploded")

        monkeypatch.setattr(service.hasher, "hash", boom)
        with pytest.raises(RuntimeError):
            _register_alice(service)
        monkeypatch.undo()
        # Keys were handed back, so the same identity registers straight away.
        assert _register_alice(service).email == "alice@x.com"

    def test_lost_commit_ack_still_registers(self, service, monkeypatch):
        backend = service.accounts.backend
        real_insert = backend.insert
        calls = []

        def insert_then_drop(*args):
            real_insert(*args)
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("COMMIT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(backend, "insert", insert_then_drop)
        account = _register_alice(service)
        assert len(calls) == 2
        assert service.accounts.find_by_email("alice@x.com").id == account.id

    def test_release_failure_does_not_mask_original_error(self, service, monkeypatch):
        def boom(plaintext):
            raise RuntimeError("hasher exploded")

        def unavailable(reservation):
            raise StorageUnavailable()

        monkeypatch.setattr(service.hasher, "hash", boom)
        monkeypatch.setattr(service.accounts, "release", unavailable)
        with pytest.raises(RuntimeError, match="hasher exploded"):
            _register_alice(service)


class TestLogin:
    def test_success(self, service, clock):
        account = _register_alice(service)
        result = service.login("alice@x.com", "pw12345")
        assert result.account.id == account.id
        assert result.token
        assert result.expires_at == clock.now + timedelta(hours=24)
        assert service.authenticate(result.token).id == account.id

    def test_email_case_insensitive(self, service):
        _register_alice(service)
        assert service.login("Alice@X.com", "pw12345").account.username == "alice"

    def test_wrong_password_and_unknown_email_identical(self, service):
        _register_alice(service)
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("alice@x.com", "wrong-password")
        with pytest.raises(InvalidCredentials) as unknown:
            service.login("nobody@x.com", "pw12345")
        assert type(wrong.value) is type(unknown.value)
        assert wrong.value.message == unknown.value.message == "Invalid email or password."

    def test_unknown_email_still_verifies_against_decoy(self, service, monkeypatch):
        seen = []
        real_verify = service.hasher.verify

        def spy(plaintext, record):
            seen.append(record)
            return real_verify(plaintext, record)

        monkeypatch.setattr(service.hasher, "verify", spy)
        with pytest.raises(InvalidCredentials):
            service.login("nobody@x.com", "pw12345")
        assert seen == [service.hasher.decoy]

    @pytest.mark.parametrize("email,password", [("", "pw12345"), ("alice@x.com", ""), ("  ", None)])
    def test_blank_fields(self, service, email, password):
        with pytest.raises(ValidationError) as exc_info:
            service.login(email, password)
        assert exc_info.value.message == "Email and password are required."

    def test_each_login_gets_its_own_session(self, service):
        _register_alice(service)
        first = service.login("alice@x.com", "pw12345")
        second = service.login("alice@x.com", "pw12345")
        assert first.token != second.token
        service.logout(first.token)
        assert service.authenticate(second.token).username == "alice"

    def test_rehash_on_cost_change(self, service):
        account = _register_alice(service)
        assert account.password.cost == 4
        service.hasher = PasswordHasher(rounds=5)
        service.login("alice@x.com", "pw12345")
        upgraded = service.accounts.find_by_id(account.id).password
        assert upgraded.cost == 5
        assert service.hasher.verify("pw12345", upgraded)

    def test_rehashed_record_matches_decoy_cost(self, service):
        """Once rehashed, a wrong password costs the same bcrypt work as an unknown email."""
        account = _register_alice(service)
        service.hasher = PasswordHasher(rounds=5)
        assert account.password.cost != service.hasher.decoy.cost
        service.login("alice@x.com", "pw12345")
        assert service.accounts.find_by_id(account.id).password.cost == service.hasher.decoy.cost


class TestLogout:
    def test_logout_revokes(self, service):
        _register_alice(service)
        token = service.login("alice@x.com", "pw12345").token
        service.logout(token)
        with pytest.raises(SessionRevoked):
            service.authenticate(token)

    @pytest.mark.parametrize("token", [None, "", "never-issued"])
    def test_logout_tolerates_missing_token(self, service, token):
        service.logout(token)

    @pytest.mark.parametrize("token", [None, ""])
    def test_authenticate_without_token(self, service, token):
        with pytest.raises(SessionNotFound):
            service.authenticate(token)


class TestMaintenance:
    def test_run_maintenance(self, service, clock):
        _register_alice(service)
        service.login("alice@x.com", "pw12345")
        service.accounts.reserve("pending", "pending@x.com")
        clock.advance(hours=25)
        assert service.run_maintenance() == {"sessions": 1, "reservations": 2}
        assert service.run_maintenance() == {"sessions": 0, "reservations": 0}


class TestScenario:
    def test_register_login_logout(self, service):
        """Full lifecycle: register, duplicate refused, bad login, login, logout."""
        service.register("alice", "alice@x.com", "+1555", "pw12345")

        with pytest.raises(DuplicateError):
            service.register("alice", "ALICE@x.com", "+1555", "pw12345")

        with pytest.raises(InvalidCredentials):
            service.login("alice@x.com", "nope")

        result = service.login("alice@x.com", "pw12345")
        assert service.authenticate(result.token).email == "alice@x.com"

        service.logout(result.token)
        with pytest.raises(SessionRevoked):
            service.authenticate(result.token)

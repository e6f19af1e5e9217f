"""Credential and session lifecycle transitions.

Every public method is one transition: it captures ``now`` once, reads the
account fresh, applies pure record transitions from
:mod:`accountcore.service.credentials`, and writes the result back with a
compare-and-swap on ``version``. A lost race re-runs the transition from a
fresh read, so two redemptions of the same single-use token can never both
succeed. Expected failures come back as :class:`Outcome` values; storage
failures propagate as :class:`StorageError`.
"""

from __future__ import annotations

import secrets
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.service.credentials import (
    TokenState,
    change_email,
    clear_token,
    issue_password_reset,
    issue_verification,
    mark_email_verified,
    record_login,
    rotate_refresh,
    set_password_hash,
    token_state,
)
from accountcore.service.email import EmailDispatcher
from accountcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from accountcore.service.hashing import SecretHasher
from accountcore.service.outcomes import Outcome, OutcomeKind, outcome_from_error
from accountcore.service.tokens import AccessTokenSigner
from accountcore.service.validation import (
    check_password,
    clean_email,
    clean_username,
    normalize_identifier,
)
from accountcore.storage.directory import AccountDirectory
from accountcore.storage.errors import ConcurrentUpdate, ConstraintViolation, StorageError
from accountcore.storage.models import Account, TokenKind, admin_view, public_view, utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ADMIN_LIST_MAX = 1000

_TOKEN_LABELS = {
    TokenKind.VERIFICATION: "verification token",
    TokenKind.PASSWORD_RESET: "reset token",
    TokenKind.REFRESH: "refresh token",
}

_FORGOT_PASSWORD_MESSAGE = (
    "If an account exists for that address, a password reset link has been sent."
)

_SECURITY_KINDS = {
    OutcomeKind.NOT_AUTHORIZED,
    OutcomeKind.INVALID_TOKEN,
    OutcomeKind.EXPIRED_TOKEN,
}


class LifecycleEngine:
    def __init__(
        self,
        directory: AccountDirectory,
        hasher: SecretHasher,
        signer: AccessTokenSigner,
        email: EmailDispatcher,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.directory = directory
        self.hasher = hasher
        self.signer = signer
        self.email = email
        self.settings = settings
        self._clock = clock
        self._decoy: Optional[str] = None

    # plumbing
    def _run(self, operation: str, transition: Callable[[datetime], Outcome]) -> Outcome:
        attempts = self.settings.transition_retries
        for attempt in range(1, attempts + 1):
            now = self._clock()
            try:
                return transition(now)
            except ConcurrentUpdate as exc:
                logger.info(
                    "transition_retry",
                    operation=operation,
                    account_id=exc.account_id,
                    attempt=attempt,
                )
            except ConstraintViolation as exc:
                field = exc.field or "record"
                outcome = Outcome.failure(
                    OutcomeKind.CONFLICT,
                    f"{field} already in use",
                    detail=f"{field}_taken",
                )
                self._log_rejection(operation, outcome)
                return outcome
            except ServiceError as exc:
                outcome = outcome_from_error(exc)
                self._log_rejection(operation, outcome)
                return outcome
        logger.error("transition_retries_exhausted", operation=operation, attempts=attempts)
        raise StorageError(
            "concurrent updates kept winning the race",
            {"operation": operation, "attempts": attempts},
        )

    def _log_rejection(self, operation: str, outcome: Outcome) -> None:
        log_fn = logger.warning if outcome.kind in _SECURITY_KINDS else logger.info
        log_fn(
            "transition_rejected",
            operation=operation,
            outcome=outcome.kind.value,
            reason_code=outcome.detail,
        )

    def _decoy_digest(self) -> str:
        if self._decoy is None:
            self._decoy = self.hasher.hash(secrets.token_hex(16))
        return self._decoy

    def _require_account(self, account_id: Optional[str]) -> Account:
        account = self.directory.find_by_id(account_id) if account_id else None
        if account is None:
            raise NotFoundError("account not found", detail={"reason": "unknown_account"})
        return account

    def _find_live_token(self, kind: TokenKind, value: Optional[str], now: datetime) -> Account:
        """Holder of a live ``kind`` token.

        An expired pair is cleared before ExpiredTokenError is raised, so
        the next attempt with the same value sees InvalidTokenError.
        """
        label = _TOKEN_LABELS[kind]
        if not value or not value.strip():
            raise InvalidTokenError(f"invalid {label}", detail={"reason": "blank_token"})
        account = self.directory.find_by_token(kind, value)
        state = token_state(account, kind, value, now) if account else TokenState.ABSENT
        if state is TokenState.ABSENT:
            raise InvalidTokenError(f"invalid {label}", detail={"reason": "token_not_found"})
        if state is TokenState.EXPIRED:
            self.directory.save(clear_token(account, kind))
            raise ExpiredTokenError(f"{label} has expired", detail={"reason": "token_expired"})
        return account

    def _claim_email(self, email: str, *, claimant_id: Optional[str] = None) -> Optional[Account]:
        """Stale unverified owner of ``email`` that the claimant may replace.

        The caller hands it to ``create``/``save`` as ``replacing`` so the
        deletion and the write land together, and only while the owner is
        still at the version read here.
        """
        owner = self.directory.find_by_email(email)
        if owner is None or owner.id == claimant_id:
            return None
        if owner.email_verified or not self.settings.reclaim_unverified_email:
            raise ConflictError(
                "email already in use",
                detail={"field": "email", "reason": "email_taken"},
            )
        return owner

    def _log_reclaimed(self, stale: Optional[Account], claimant_id: str) -> None:
        if stale is not None:
            logger.warning(
                "unverified_account_reclaimed",
                reclaimed_account_id=stale.id,
                claimant_id=claimant_id,
            )

    def _ensure_username_free(self, username: str, *, claimant_id: Optional[str] = None) -> None:
        owner = self.directory.find_by_username(username)
        if owner is not None and owner.id != claimant_id:
            raise ConflictError(
                "username already in use",
                detail={"field": "username", "reason": "username_taken"},
            )

    def _session_payload(self, account: Account, refresh_token: str, now: datetime) -> Dict[str, Any]:
        access_token, access_expires_at = self.signer.issue(account.id, account.username, now)
        return {
            "access_token": access_token,
            "access_expires_at": access_expires_at.isoformat(),
            "refresh_token": refresh_token,
            "refresh_expires_at": account.refresh.expires_at.isoformat(),
            "token_type": "bearer",
            "account": public_view(account).to_dict(),
        }

    # transitions
    def register(self, username: str, password: str, email: Optional[str] = None) -> Outcome:
        """Create an unverified account and open its first session."""

        def transition(now: datetime) -> Outcome:
            name = clean_username(username)
            check_password(password, self.settings)
            address = clean_email(email)
            self._ensure_username_free(name)
            stale = self._claim_email(address) if address is not None else None

            account = Account.new(name, self.hasher.hash(password), address, created_at=now)
            verification_token = None
            if address is not None:
                account, verification_token = issue_verification(account, self.settings, now)
            account, refresh_token = rotate_refresh(account, self.settings, now)
            stored = self.directory.create(account, replacing=stale)
            self._log_reclaimed(stale, stored.id)
            logger.info("account_registered", account_id=stored.id, with_address=address is not None)

            delivered = None
            if verification_token is not None:
                delivered = self.email.send_verification(stored, verification_token)
                if not delivered:
                    logger.warning("verification_delivery_failed", account_id=stored.id)
            return Outcome.success(
                self._session_payload(stored, refresh_token, now),
                email_delivered=delivered,
            )

        return self._run("register", transition)

    def login(self, username_or_email: str, password: str) -> Outcome:
        """Authenticate by username or email.

        Unknown account and wrong password produce the same outcome; only
        ``Outcome.detail`` tells them apart.
        """

        def transition(now: datetime) -> Outcome:
            identifier = normalize_identifier(username_or_email)
            if not identifier or not password:
                raise ValidationError("username and password are required")
            account = self.directory.find_by_username(identifier)
            if account is None:
                account = self.directory.find_by_email(identifier.lower())
            if account is None:
                # Same argon2 work as a real mismatch
                self.hasher.verify(password, self._decoy_digest())
                raise AuthenticationError(
                    "invalid credentials", detail={"reason": "unknown_account"}
                )
            if not self.hasher.verify(password, account.password_hash):
                raise AuthenticationError(
                    "invalid credentials", detail={"reason": "password_mismatch"}
                )

            updated = record_login(account, now)
            if self.hasher.needs_rehash(account.password_hash):
                updated = replace(updated, password_hash=self.hasher.hash(password))
                logger.info("password_rehashed", account_id=account.id)
            updated, refresh_token = rotate_refresh(updated, self.settings, now)
            stored = self.directory.save(updated)
            logger.info("login_succeeded", account_id=stored.id, streak_days=stored.streak_days)
            return Outcome.success(self._session_payload(stored, refresh_token, now))

        return self._run("login", transition)

    def verify_email(self, token: str) -> Outcome:
        def transition(now: datetime) -> Outcome:
            account = self._find_live_token(TokenKind.VERIFICATION, token, now)
            stored = self.directory.save(mark_email_verified(account))
            logger.info("email_verified", account_id=stored.id)
            return Outcome.success({"account": public_view(stored).to_dict()})

        return self._run("verify_email", transition)

    def resend_verification(self, account_id: str) -> Outcome:
        """Issue a fresh verification token; any outstanding one stops validating."""

        def transition(now: datetime) -> Outcome:
            account = self._require_account(account_id)
            if account.email_verified:
                raise ValidationError(
                    "email already verified", detail={"reason": "already_verified"}
                )
            if not account.email:
                raise ValidationError("no email on file", detail={"reason": "no_email"})
            updated, token = issue_verification(account, self.settings, now)
            stored = self.directory.save(updated)
            delivered = self.email.send_verification(stored, token)
            if not delivered:
                logger.warning("verification_delivery_failed", account_id=stored.id)
            return Outcome.success({"sent": delivered}, email_delivered=delivered)

        return self._run("resend_verification", transition)

    def forgot_password(self, email: str) -> Outcome:
        """Start a password reset.

        The outcome is identical whether or not the address is known and
        whether or not delivery worked.
        """

        def transition(now: datetime) -> Outcome:
            address = clean_email(email)
            if address is None:
                raise ValidationError("email is required", detail={"field": "email"})
            account = self.directory.find_by_email(address)
            if account is None:
                logger.info("password_reset_unknown_account")
                return Outcome.success(
                    {"message": _FORGOT_PASSWORD_MESSAGE}, detail="unknown_account"
                )
            updated, token = issue_password_reset(account, self.settings, now)
            stored = self.directory.save(updated)
            if not self.email.send_password_reset(stored, token):
                logger.warning("password_reset_delivery_failed", account_id=stored.id)
            logger.info("password_reset_requested", account_id=stored.id)
            return Outcome.success({"message": _FORGOT_PASSWORD_MESSAGE}, detail="reset_issued")

        return self._run("forgot_password", transition)

    def reset_password(self, token: str, new_password: str) -> Outcome:
        def transition(now: datetime) -> Outcome:
            check_password(new_password, self.settings, field="new_password")
            account = self._find_live_token(TokenKind.PASSWORD_RESET, token, now)
            updated = set_password_hash(account, self.hasher.hash(new_password))
            if self.settings.revoke_sessions_on_password_reset:
                updated = clear_token(updated, TokenKind.REFRESH)
            stored = self.directory.save(updated)
            logger.info(
                "password_reset_completed",
                account_id=stored.id,
                sessions_revoked=self.settings.revoke_sessions_on_password_reset,
            )
            return Outcome.success({"account": public_view(stored).to_dict()})

        return self._run("reset_password", transition)

    def refresh(self, refresh_token: str) -> Outcome:
        """Redeem a refresh token for a new access/refresh pair (single use)."""

        def transition(now: datetime) -> Outcome:
            account = self._find_live_token(TokenKind.REFRESH, refresh_token, now)
            updated, new_token = rotate_refresh(account, self.settings, now)
            stored = self.directory.save(updated)
            logger.debug("refresh_rotated", account_id=stored.id)
            return Outcome.success(self._session_payload(stored, new_token, now))

        return self._run("refresh", transition)

    def logout(self, account_id: str) -> Outcome:
        # Outstanding access tokens stay valid until they expire
        def transition(now: datetime) -> Outcome:
            account = self._require_account(account_id)
            if account.refresh is not None:
                self.directory.save(clear_token(account, TokenKind.REFRESH))
                logger.info("logout", account_id=account.id)
            return Outcome.success({"logged_out": True})

        return self._run("logout", transition)

    def update_profile(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Outcome:
        """Change username and/or email.

        A new email address starts verification over; an empty string
        removes the address. Setting the current address again is a no-op.
        """

        def transition(now: datetime) -> Outcome:
            if username is None and email is None:
                raise ValidationError("provide a username or email to update")
            account = self._require_account(account_id)
            updated = account

            if username is not None:
                name = clean_username(username)
                if name != account.username:
                    self._ensure_username_free(name, claimant_id=account.id)
                    updated = replace(updated, username=name)

            verification_token = None
            stale = None
            if email is not None:
                address = clean_email(email)
                if address != account.email:
                    if address is not None:
                        stale = self._claim_email(address, claimant_id=account.id)
                    updated = change_email(updated, address)
                    if address is not None:
                        updated, verification_token = issue_verification(
                            updated, self.settings, now
                        )

            if updated == account:
                return Outcome.success({"account": public_view(account).to_dict()})
            stored = self.directory.save(updated, replacing=stale)
            self._log_reclaimed(stale, stored.id)
            logger.info(
                "profile_updated",
                account_id=stored.id,
                username_changed=stored.username != account.username,
                address_changed=stored.email != account.email,
            )

            delivered = None
            if verification_token is not None:
                delivered = self.email.send_email_change_verification(stored, verification_token)
                if not delivered:
                    logger.warning("verification_delivery_failed", account_id=stored.id)
            return Outcome.success(
                {"account": public_view(stored).to_dict()}, email_delivered=delivered
            )

        return self._run("update_profile", transition)

    def change_password(self, account_id: str, current_password: str, new_password: str) -> Outcome:
        def transition(now: datetime) -> Outcome:
            if not current_password:
                raise ValidationError(
                    "current_password is required", detail={"field": "current_password"}
                )
            check_password(new_password, self.settings, field="new_password")
            account = self._require_account(account_id)
            if not self.hasher.verify(current_password, account.password_hash):
                raise AuthenticationError(
                    "invalid credentials", detail={"reason": "password_mismatch"}
                )
            updated = set_password_hash(account, self.hasher.hash(new_password))
            updated, refresh_token = rotate_refresh(updated, self.settings, now)
            stored = self.directory.save(updated)
            logger.info("password_changed", account_id=stored.id)
            return Outcome.success(self._session_payload(stored, refresh_token, now))

        return self._run("change_password", transition)

    def authenticate(self, access_token: str) -> Outcome:
        """Resolve a bearer access token to the account it was issued for."""

        def transition(now: datetime) -> Outcome:
            if not access_token or not access_token.strip():
                raise InvalidTokenError("missing access token", detail={"reason": "blank_token"})
            claims = self.signer.decode(access_token.strip(), now)
            account = self.directory.find_by_id(claims.subject)
            if account is None:
                raise NotFoundError("account not found", detail={"reason": "unknown_account"})
            return Outcome.success({"account": public_view(account).to_dict()})

        return self._run("authenticate", transition)

    def get_profile(self, account_id: str) -> Outcome:
        def transition(now: datetime) -> Outcome:
            account = self._require_account(account_id)
            return Outcome.success({"account": public_view(account).to_dict()})

        return self._run("get_profile", transition)

    # administration
    def admin_list_accounts(self, limit: int = 100) -> Outcome:
        def transition(now: datetime) -> Outcome:
            if limit < 1 or limit > ADMIN_LIST_MAX:
                raise ValidationError(
                    f"limit must be between 1 and {ADMIN_LIST_MAX}", detail={"field": "limit"}
                )
            accounts = self.directory.list_accounts(limit=limit)
            return Outcome.success(
                {"accounts": [admin_view(a) for a in accounts], "count": len(accounts)}
            )

        return self._run("admin_list_accounts", transition)

    def admin_find_by_email(self, email: str) -> Outcome:
        def transition(now: datetime) -> Outcome:
            address = clean_email(email)
            if address is None:
                raise ValidationError("email is required", detail={"field": "email"})
            account = self.directory.find_by_email(address)
            if account is None:
                raise NotFoundError("account not found", detail={"reason": "unknown_account"})
            return Outcome.success({"account": admin_view(account)})

        return self._run("admin_find_by_email", transition)

    def admin_set_password(self, email: str, new_password: str) -> Outcome:
        """Overwrite an account's password; any outstanding reset link dies with it."""

        def transition(now: datetime) -> Outcome:
            address = clean_email(email)
            if address is None:
                raise ValidationError("email is required", detail={"field": "email"})
            check_password(new_password, self.settings, field="new_password")
            account = self.directory.find_by_email(address)
            if account is None:
                raise NotFoundError("account not found", detail={"reason": "unknown_account"})
            stored = self.directory.save(
                set_password_hash(account, self.hasher.hash(new_password))
            )
            logger.warning("admin_password_set", account_id=stored.id)
            return Outcome.success({"account": admin_view(stored)})

        return self._run("admin_set_password", transition)

    def admin_delete_account(self, account_id: str) -> Outcome:
        def transition(now: datetime) -> Outcome:
            if not account_id or not self.directory.delete(account_id):
                raise NotFoundError("account not found", detail={"reason": "unknown_account"})
            logger.warning("admin_account_deleted", account_id=account_id)
            return Outcome.success({"deleted": True, "id": account_id})

        return self._run("admin_delete_account", transition)


__all__ = ["ADMIN_LIST_MAX", "Clock", "LifecycleEngine"]

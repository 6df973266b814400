"""Vault file import and decryption.

Accepts an uploaded file, determines whether it is a plain JSON credential
bundle, a zipped bundle, or an encrypted vault container, and turns it into
a list of vault accounts.

State machine:
    idle -> processing -> ready
                       -> awaiting_password -> processing -> ready | error

Per-entry derivation failures only shrink the output set; a file that
yields no account at all is an error.
"""

from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import msgspec

from .classifier import (
    is_hex_private_key,
    is_qubic_identity,
    is_qubic_seed,
    normalize_private_key,
    normalize_seed,
)
from .errors import (
    ConfigurationError,
    DecryptionError,
    EmptyDerivationError,
    EmptyVaultError,
    NoSpendableSeedsError,
    QubicLinkError,
    ValidationError,
)
from .format_utils import digest_hex, format_bytes, shorten
from .identity import SecretKind
from .metrics import CREDENTIAL_IMPORTS_TOTAL, VAULT_ENTRIES_DROPPED_TOTAL
from .models import (
    AccountSource,
    ChangeNotifier,
    ConnectionState,
    VaultAccount,
    VaultSummary,
    VaultUpload,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .identity import IdentityResolver

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK"
MAX_VAULT_SIZE = 10 * 1024 * 1024
ENCRYPTED_MARKERS = ("cipher", "iv", "salt")
ENTRY_COLLECTION_KEYS = ("accounts", "wallets", "seeds", "entries", "data")
CHECKSUM_LENGTH = 32
WATCH_ONLY_LABEL = "Watch-only account"


# Container sniffing


def is_zip_archive(data: bytes) -> bool:
    """Check whether bytes start with a zip local-file header signature."""
    return len(data) >= 4 and data[:2] == ZIP_SIGNATURE


def extract_vault_text(data: bytes) -> str:
    """Return the vault text, unwrapping zip archives.

    The first entry ending in .json is used, falling back to the first
    non-directory entry.

    Raises:
        ValidationError: If the archive is unreadable, empty or its entry is too large

    """
    if not is_zip_archive(data):
        return data.decode("utf-8", errors="replace")

    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            files = [info for info in archive.infolist() if not info.is_dir()]
            selected = next(
                (info for info in files if info.filename.endswith(".json")),
                files[0] if files else None,
            )
            if selected is None:
                raise ValidationError("Vault archive does not contain any readable entries.")
            if selected.file_size > MAX_VAULT_SIZE:
                raise ValidationError("Vault archive entry is too large.")
            raw = archive.read(selected)
    except zipfile.BadZipFile as e:
        raise ValidationError(f"Unable to read vault archive: {e}") from e

    return raw.decode("utf-8", errors="replace")


def prepare_upload(data: bytes, file_name: str) -> tuple[str, VaultUpload]:
    """Normalize an upload and compute its checksum.

    The checksum covers the normalized text so a zipped file and the
    equivalent raw JSON file yield the same value.

    Args:
        data: Raw uploaded bytes
        file_name: Name of the uploaded file

    Returns:
        Tuple of (normalized text, staged upload)

    """
    text = extract_vault_text(data)
    normalized = text.encode("utf-8")
    upload = VaultUpload(
        file_bytes=normalized,
        file_name=file_name,
        size_bytes=len(data),
        checksum=digest_hex(normalized)[:CHECKSUM_LENGTH],
    )
    return text, upload


def parse_vault_json(text: str) -> Any:
    """Parse vault text as JSON.

    Raises:
        ValidationError: If the text is not valid JSON

    """
    try:
        return msgspec.json.decode(text)
    except msgspec.DecodeError as e:
        raise ValidationError("Vault file is not valid JSON.") from e


def looks_encrypted(value: Any) -> bool:
    """Check whether parsed JSON is an encrypted vault container."""
    return isinstance(value, dict) and all(marker in value for marker in ENCRYPTED_MARKERS)


# Plaintext vaults


class VaultFileEntry(msgspec.Struct, rename="camel"):
    """One candidate entry of a plaintext vault file."""

    name: str | None = None
    alias: str | None = None
    seed: str | None = None
    private_key: str | None = None
    public_key: str | None = None
    public_id: str | None = None

    @property
    def label(self) -> str | None:
        return self.name or self.alias


def collect_vault_entries(value: Any) -> list[dict[str, Any]]:
    """Collect candidate entry objects from parsed vault JSON.

    Arrays under accounts/wallets/seeds/entries/data are scanned in that
    order; if none exist, every array value of the object is scanned.
    Non-object items are skipped.
    """
    results: list[dict[str, Any]] = []

    def consume(candidate: Any) -> None:
        if isinstance(candidate, list):
            results.extend(item for item in candidate if isinstance(item, dict))

    if isinstance(value, list):
        consume(value)
    elif isinstance(value, dict):
        for key in ENTRY_COLLECTION_KEYS:
            consume(value.get(key))
        if not results:
            for candidate in value.values():
                consume(candidate)

    return results


async def derive_vault_account(
    entry: VaultFileEntry,
    resolver: IdentityResolver,
) -> VaultAccount | None:
    """Derive an account from one entry, probing seed, private key, then identity.

    Returns:
        The account, or None if the entry matches no known shape

    Raises:
        DerivationError: If the identity service rejects the material

    """
    if entry.seed:
        seed = normalize_seed(entry.seed)
        if is_qubic_seed(seed):
            identity = await resolver.derive_identity(seed, SecretKind.SEED)
            snapshot = await resolver.fetch_snapshot(identity.public_id)
            return VaultAccount(
                public_id=identity.public_id,
                source=AccountSource.SEED,
                display_name=entry.label,
                balance=snapshot.balance,
            )

    if entry.private_key:
        private_key = normalize_private_key(entry.private_key)
        if is_hex_private_key(private_key):
            identity = await resolver.derive_identity(private_key, SecretKind.PRIVATE_KEY)
            snapshot = await resolver.fetch_snapshot(identity.public_id)
            return VaultAccount(
                public_id=identity.public_id,
                source=AccountSource.PRIVATE_KEY,
                display_name=entry.label,
                balance=snapshot.balance,
            )

    candidate = entry.public_id or entry.public_key
    if candidate and is_qubic_identity(candidate):
        snapshot = await resolver.fetch_snapshot(candidate)
        return VaultAccount(
            public_id=candidate,
            source=AccountSource.PUBLIC_KEY,
            display_name=entry.label or WATCH_ONLY_LABEL,
            balance=snapshot.balance,
        )

    return None


@dataclass(slots=True)
class DerivationBatch:
    """Partition of a batch derivation into accounts and dropped entries.

    Attributes:
        accounts: Successfully derived accounts, in input order
        dropped: Labels (or indexes) of entries that were dropped

    """

    accounts: list[VaultAccount] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


async def _derive_entry(
    index: int,
    raw_entry: dict[str, Any],
    resolver: IdentityResolver,
) -> tuple[str, VaultAccount | None, str]:
    """Derive one raw entry, returning (label, account, drop reason)."""
    label = f"#{index}"
    try:
        entry = msgspec.convert(raw_entry, VaultFileEntry)
    except msgspec.ValidationError as e:
        logger.warning(f"Dropping vault entry {label}: invalid shape ({e})")
        return label, None, "invalid_shape"

    label = entry.label or label
    try:
        account = await derive_vault_account(entry, resolver)
    except Exception as e:
        logger.warning(f"Failed to derive vault entry {label}: {e}")
        return label, None, "derivation_failed"

    if account is None:
        logger.warning(f"Dropping vault entry {label}: no seed, private key or identity")
        return label, None, "unrecognized"

    return label, account, ""


async def derive_vault_accounts(
    entries: list[dict[str, Any]],
    resolver: IdentityResolver,
) -> DerivationBatch:
    """Derive all entries concurrently and partition the results."""
    results = await asyncio.gather(
        *(_derive_entry(index, entry, resolver) for index, entry in enumerate(entries)),
    )

    batch = DerivationBatch()
    for label, account, reason in results:
        if account is None:
            VAULT_ENTRIES_DROPPED_TOTAL.labels(reason=reason).inc()
            batch.dropped.append(label)
        else:
            batch.accounts.append(account)
    return batch


def parse_vault_summary(parsed: Any, derived_count: int) -> VaultSummary:
    """Build the summary of a plaintext vault.

    The account count comes from an `accounts` array when present, else
    from the number of derived accounts.
    """
    accounts: int | None = derived_count
    last_updated: str | None = None
    if isinstance(parsed, dict):
        if isinstance(parsed.get("accounts"), list):
            accounts = len(parsed["accounts"])
        raw_updated = parsed.get("updatedAt") or parsed.get("lastUpdated")
        if isinstance(raw_updated, str):
            last_updated = raw_updated
    return VaultSummary(accounts=accounts, last_updated=last_updated)


async def parse_plain_vault(parsed: Any, resolver: IdentityResolver) -> list[VaultAccount]:
    """Derive accounts from parsed plaintext vault JSON.

    Raises:
        EmptyVaultError: If there are no entries or none of them survive

    """
    entries = collect_vault_entries(parsed)
    if not entries:
        raise EmptyVaultError("This vault file does not contain any account entries.")

    batch = await derive_vault_accounts(entries, resolver)
    if batch.dropped:
        logger.info(
            f"Vault derivation complete: {len(batch.accounts)} derived, "
            f"{len(batch.dropped)} dropped",
        )
    if not batch.accounts:
        raise EmptyVaultError(
            "No compatible seeds, private keys, or identities were found in this vault file.",
        )
    return batch.accounts


# Encrypted vaults


class VaultSecret(msgspec.Struct, frozen=True):
    """Secret listed by an unlocked vault container."""

    public_id: str
    alias: str | None = None
    is_only_watch: bool = False


class VaultContainer(Protocol):
    """Password-protected vault container service."""

    async def unlock(
        self,
        is_vault_file: bool,
        password: str,
        config_file: VaultUpload | None = None,
        file: VaultUpload | None = None,
    ) -> bool: ...

    def list_secrets(self) -> list[VaultSecret]: ...

    async def reveal_secret(self, public_id: str) -> str: ...


async def _derive_revealed_secret(
    container: VaultContainer,
    secret: VaultSecret,
    resolver: IdentityResolver,
) -> VaultAccount | None:
    try:
        seed = await container.reveal_secret(secret.public_id)
        identity = await resolver.derive_identity(normalize_seed(seed), SecretKind.SEED)
        snapshot = await resolver.fetch_snapshot(identity.public_id)
    except Exception as e:
        logger.warning(f"Failed to derive seed from vault {shorten(secret.public_id)}: {e}")
        VAULT_ENTRIES_DROPPED_TOTAL.labels(reason="reveal_failed").inc()
        return None

    return VaultAccount(
        public_id=identity.public_id,
        source=AccountSource.SEED,
        display_name=secret.alias or secret.public_id,
        balance=snapshot.balance,
    )


async def unlock_encrypted_vault(
    container: VaultContainer,
    upload: VaultUpload,
    password: str,
    resolver: IdentityResolver,
) -> list[VaultAccount]:
    """Unlock an encrypted container and derive its spendable seeds.

    Raises:
        ValidationError: If the password is blank
        DecryptionError: If the password is wrong or the container is corrupt
        NoSpendableSeedsError: If the container only holds watch-only entries
        EmptyDerivationError: If every reveal/derive attempt failed

    """
    if not password.strip():
        raise ValidationError("Enter the password used to create this vault.")

    try:
        unlocked = await container.unlock(True, password, None, upload)
    except QubicLinkError:
        raise
    except Exception as e:
        raise DecryptionError(f"Unable to unlock vault: {e}") from e
    if not unlocked:
        raise DecryptionError("Incorrect password or corrupted vault file.")

    secrets = [secret for secret in container.list_secrets() if not secret.is_only_watch]
    if not secrets:
        raise NoSpendableSeedsError("Vault unlocked but contains no spendable seeds.")

    derived = await asyncio.gather(
        *(_derive_revealed_secret(container, secret, resolver) for secret in secrets),
    )
    accounts = [account for account in derived if account is not None]
    if not accounts:
        raise EmptyDerivationError("Unable to derive any accounts from this vault.")
    return accounts


# Pipeline


class VaultPhase(Enum):
    """Vault pipeline phase."""

    IDLE = "idle"
    PROCESSING = "processing"
    AWAITING_PASSWORD = "awaiting_password"
    READY = "ready"
    ERROR = "error"


@dataclass(slots=True)
class VaultState:
    """Current state of the vault pipeline."""

    phase: VaultPhase = VaultPhase.IDLE
    message: str | None = None
    file_name: str | None = None
    size_bytes: int | None = None
    checksum: str | None = None
    summary: VaultSummary | None = None
    accounts: list[VaultAccount] = field(default_factory=list)

    @property
    def formatted_size(self) -> str | None:
        return format_bytes(self.size_bytes) if self.size_bytes is not None else None


class VaultImporter(ChangeNotifier):
    """Vault pipeline: file selection, password unlock and reset.

    Args:
        resolver: Identity resolver used for derivation and snapshots
        container_factory: Builds the vault container service, or None
            when encrypted vaults are unsupported

    """

    def __init__(
        self,
        resolver: IdentityResolver,
        container_factory: Callable[[], VaultContainer] | None = None,
    ) -> None:
        super().__init__()
        self._resolver = resolver
        self._container_factory = container_factory
        self._container: VaultContainer | None = None
        self._state = VaultState()
        self._upload: VaultUpload | None = None
        self._generation = 0

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def upload(self) -> VaultUpload | None:
        return self._upload

    @property
    def connection_state(self) -> ConnectionState:
        """Project the vault phase onto a connection state."""
        match self._state.phase:
            case VaultPhase.READY:
                return ConnectionState.CONNECTED
            case VaultPhase.PROCESSING:
                return ConnectionState.CONNECTING
            case VaultPhase.ERROR:
                return ConnectionState.ERROR
            case _:
                return ConnectionState.IDLE

    def _set_state(self, state: VaultState) -> None:
        self._state = state
        self._notify()

    def _fail(self, message: str) -> None:
        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="vault", outcome="error").inc()
        self._set_state(VaultState(phase=VaultPhase.ERROR, message=message))

    async def select_file(self, data: bytes, file_name: str) -> VaultState:
        """Process a selected or dropped file.

        Encrypted containers are staged and wait for `unlock`; plaintext
        bundles are derived immediately.
        """
        self._generation += 1
        generation = self._generation
        self._upload = None
        self._set_state(VaultState(phase=VaultPhase.PROCESSING, message=f"Preparing {file_name}…"))

        try:
            text, upload = await asyncio.to_thread(prepare_upload, data, file_name)
            parsed = parse_vault_json(text)

            if looks_encrypted(parsed):
                if generation != self._generation:
                    return self._state
                self._upload = upload
                logger.info(f"Encrypted vault staged: {file_name} ({upload.checksum})")
                self._set_state(
                    VaultState(
                        phase=VaultPhase.AWAITING_PASSWORD,
                        message="Encrypted vault detected. Enter password to unlock.",
                        file_name=file_name,
                        size_bytes=upload.size_bytes,
                        checksum=upload.checksum,
                    ),
                )
                return self._state

            accounts = await parse_plain_vault(parsed, self._resolver)
        except QubicLinkError as e:
            if generation == self._generation:
                self._upload = None
                self._fail(str(e))
            return self._state
        except Exception as e:
            logger.exception(f"Unexpected error reading vault file {file_name}")
            if generation == self._generation:
                self._upload = None
                self._fail(f"Unable to read vault file: {e}")
            return self._state

        if generation != self._generation:
            return self._state

        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="vault", outcome="ready").inc()
        logger.info(f"Imported plaintext vault {file_name}: {len(accounts)} account(s)")
        self._set_state(
            VaultState(
                phase=VaultPhase.READY,
                message="Vault ready to unlock.",
                file_name=file_name,
                size_bytes=upload.size_bytes,
                checksum=upload.checksum,
                summary=parse_vault_summary(parsed, len(accounts)),
                accounts=accounts,
            ),
        )
        return self._state

    def _get_container(self) -> VaultContainer:
        if self._container is None:
            if self._container_factory is None:
                raise ConfigurationError(
                    "No vault container backend configured. Set --vault-factory to unlock "
                    "encrypted vaults.",
                )
            self._container = self._container_factory()
        return self._container

    async def unlock(self, password: str) -> VaultState:
        """Unlock the staged encrypted vault.

        On failure the staged upload is kept so the password can be retried;
        on success it is discarded.
        """
        upload = self._upload
        if upload is None:
            self._fail("Upload an encrypted vault before unlocking.")
            return self._state

        self._generation += 1
        generation = self._generation
        self._set_state(
            VaultState(
                phase=VaultPhase.PROCESSING,
                message="Unlocking encrypted vault…",
                file_name=upload.file_name,
                size_bytes=upload.size_bytes,
                checksum=upload.checksum,
            ),
        )

        try:
            container = self._get_container()
            accounts = await unlock_encrypted_vault(container, upload, password, self._resolver)
        except QubicLinkError as e:
            if generation == self._generation:
                self._fail(str(e))
            return self._state
        except Exception as e:
            logger.exception("Unexpected error unlocking vault")
            if generation == self._generation:
                self._fail(f"Unable to unlock vault file: {e}")
            return self._state

        if generation != self._generation:
            return self._state

        self._upload = None
        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="vault", outcome="ready").inc()
        logger.info(f"Unlocked encrypted vault {upload.file_name}: {len(accounts)} account(s)")
        self._set_state(
            VaultState(
                phase=VaultPhase.READY,
                message="Vault unlocked.",
                file_name=upload.file_name,
                size_bytes=upload.size_bytes,
                checksum=upload.checksum,
                summary=VaultSummary(
                    accounts=len(accounts),
                    last_updated=datetime.now(timezone.utc).isoformat(),
                ),
                accounts=accounts,
            ),
        )
        return self._state

    def reset(self) -> None:
        """Discard any staged upload and return to idle."""
        self._generation += 1
        self._upload = None
        self._set_state(VaultState())

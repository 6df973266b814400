"""Tests for vault file import and decryption."""

import io
import json
import zipfile
from typing import Any

import pytest

from qubic_link.errors import (
    DecryptionError,
    EmptyDerivationError,
    EmptyVaultError,
    NoSpendableSeedsError,
    ValidationError,
)
from qubic_link.identity import IdentityResolver
from qubic_link.models import AccountSource, ConnectionState
from qubic_link.vault import (
    VaultImporter,
    VaultPhase,
    VaultSecret,
    collect_vault_entries,
    extract_vault_text,
    is_zip_archive,
    looks_encrypted,
    parse_plain_vault,
    parse_vault_summary,
    prepare_upload,
    unlock_encrypted_vault,
)

from .conftest import (
    OTHER_QUBIC_SEED,
    PRIVATE_KEY_HEX,
    QUBIC_SEED,
    WATCH_ONLY_ID,
    FakeIdentityService,
    FakeVaultContainer,
    identity_for,
)

ENCRYPTED_VAULT = {"cipher": "abc", "iv": "def", "salt": "ghi"}


def _zip(entries: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def _json_bytes(value: Any) -> bytes:
    return json.dumps(value).encode()


class TestContainerSniffing:
    """Tests for zip detection, extraction and checksums."""

    def test_zip_signature(self) -> None:
        assert is_zip_archive(_zip({"a.json": "{}"}))
        assert not is_zip_archive(b"{}")

    def test_prefers_json_entry(self) -> None:
        data = _zip({"readme.txt": "hello", "vault.json": '{"accounts": []}'})
        assert extract_vault_text(data) == '{"accounts": []}'

    def test_falls_back_to_first_file(self) -> None:
        assert extract_vault_text(_zip({"vault.dat": "payload"})) == "payload"

    def test_empty_archive(self) -> None:
        with pytest.raises(ValidationError, match="does not contain any readable entries"):
            extract_vault_text(_zip({}))

    def test_corrupt_archive(self) -> None:
        with pytest.raises(ValidationError, match="Unable to read vault archive"):
            extract_vault_text(b"PK\x03\x04not really a zip")

    def test_oversized_entry(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("qubic_link.vault.MAX_VAULT_SIZE", 16)
        data = _zip({"vault.json": " " * 17})
        with pytest.raises(ValidationError, match="too large"):
            extract_vault_text(data)

    def test_checksum_matches_for_zip_and_plain(self) -> None:
        """Zipped and raw submissions of the same JSON share a checksum."""
        content = json.dumps({"accounts": [{"seed": QUBIC_SEED}]})
        _, plain = prepare_upload(content.encode(), "vault.json")
        _, zipped = prepare_upload(_zip({"vault.json": content}), "vault.zip")

        assert plain.checksum == zipped.checksum
        assert len(plain.checksum) == 32
        assert plain.size_bytes != zipped.size_bytes

    def test_checksum_is_deterministic(self) -> None:
        _, first = prepare_upload(b'{"a": 1}', "a.json")
        _, second = prepare_upload(b'{"a": 1}', "b.json")
        assert first.checksum == second.checksum

    def test_encrypted_marker(self) -> None:
        assert looks_encrypted(ENCRYPTED_VAULT)
        assert not looks_encrypted({"cipher": "abc", "iv": "def"})
        assert not looks_encrypted([ENCRYPTED_VAULT])


class TestCollectEntries:
    def test_known_keys_in_order(self) -> None:
        value = {"wallets": [{"seed": "w"}], "accounts": [{"seed": "a"}], "other": [{"seed": "o"}]}
        assert collect_vault_entries(value) == [{"seed": "a"}, {"seed": "w"}]

    def test_falls_back_to_any_array(self) -> None:
        assert collect_vault_entries({"misc": [{"seed": "x"}, "skip", 3]}) == [{"seed": "x"}]

    def test_top_level_list(self) -> None:
        assert collect_vault_entries([{"seed": "x"}]) == [{"seed": "x"}]

    def test_no_entries(self) -> None:
        assert collect_vault_entries({"name": "vault"}) == []


class TestPlainVault:
    """Tests for plaintext derivation."""

    @pytest.mark.asyncio
    async def test_single_seed_scenario(self, resolver: IdentityResolver) -> None:
        accounts = await parse_plain_vault(
            {"accounts": [{"name": "A", "seed": QUBIC_SEED}]},
            resolver,
        )
        assert len(accounts) == 1
        assert accounts[0].source is AccountSource.SEED
        assert accounts[0].public_id == identity_for(QUBIC_SEED)
        assert accounts[0].display_name == "A"
        assert accounts[0].balance == "1000"

    @pytest.mark.asyncio
    async def test_mixed_entries_are_partitioned(
        self,
        resolver: IdentityResolver,
        identity_service: FakeIdentityService,
    ) -> None:
        """Bad entries are dropped; the rest survive in input order."""
        identity_service.failing_secrets.add(OTHER_QUBIC_SEED)
        parsed = {
            "accounts": [
                {"name": "seed", "seed": QUBIC_SEED},
                {"name": "broken", "seed": OTHER_QUBIC_SEED},
                {"alias": "key", "privateKey": "0x" + PRIVATE_KEY_HEX},
                {"publicId": WATCH_ONLY_ID},
                {"name": "junk", "seed": "too short"},
            ],
        }
        accounts = await parse_plain_vault(parsed, resolver)

        assert [account.source for account in accounts] == [
            AccountSource.SEED,
            AccountSource.PRIVATE_KEY,
            AccountSource.PUBLIC_KEY,
        ]
        assert accounts[1].public_id == identity_for(PRIVATE_KEY_HEX)
        assert accounts[1].display_name == "key"
        assert accounts[2].public_id == WATCH_ONLY_ID
        assert accounts[2].display_name == "Watch-only account"

    @pytest.mark.asyncio
    async def test_watch_only_does_not_derive(
        self,
        resolver: IdentityResolver,
        identity_service: FakeIdentityService,
    ) -> None:
        await parse_plain_vault({"accounts": [{"publicKey": WATCH_ONLY_ID}]}, resolver)
        assert identity_service.derive_calls == []
        assert identity_service.balance_calls == [WATCH_ONLY_ID]

    @pytest.mark.asyncio
    async def test_parsing_is_idempotent(self, resolver: IdentityResolver) -> None:
        parsed = {"seeds": [{"seed": QUBIC_SEED}, {"seed": OTHER_QUBIC_SEED}]}
        first = await parse_plain_vault(parsed, resolver)
        second = await parse_plain_vault(parsed, resolver)
        assert [a.public_id for a in first] == [a.public_id for a in second]

    @pytest.mark.asyncio
    async def test_no_entries(self, resolver: IdentityResolver) -> None:
        with pytest.raises(EmptyVaultError, match="does not contain any account entries"):
            await parse_plain_vault({"version": 1}, resolver)

    @pytest.mark.asyncio
    async def test_no_compatible_entries(self, resolver: IdentityResolver) -> None:
        with pytest.raises(EmptyVaultError, match="No compatible seeds"):
            await parse_plain_vault({"accounts": [{"seed": "short"}, {"publicId": "abc"}]}, resolver)

    def test_summary(self) -> None:
        summary = parse_vault_summary({"accounts": [1, 2, 3], "updatedAt": "2024-01-01"}, 2)
        assert summary.accounts == 3
        assert summary.last_updated == "2024-01-01"
        assert parse_vault_summary({"wallets": []}, 2).accounts == 2


class TestEncryptedVault:
    """Tests for unlocking encrypted containers."""

    @pytest.fixture
    def container(self) -> FakeVaultContainer:
        container = FakeVaultContainer(
            secrets=[
                VaultSecret(public_id="SPEND1", alias="Main"),
                VaultSecret(public_id="SPEND2"),
                VaultSecret(public_id="WATCH", is_only_watch=True),
            ],
        )
        container.seeds = {"SPEND1": QUBIC_SEED, "SPEND2": OTHER_QUBIC_SEED}
        return container

    @pytest.mark.asyncio
    async def test_unlock_derives_spendable_only(
        self,
        container: FakeVaultContainer,
        resolver: IdentityResolver,
    ) -> None:
        _, upload = prepare_upload(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        accounts = await unlock_encrypted_vault(container, upload, "hunter2", resolver)

        assert [a.public_id for a in accounts] == [
            identity_for(QUBIC_SEED),
            identity_for(OTHER_QUBIC_SEED),
        ]
        assert accounts[0].display_name == "Main"
        assert accounts[1].display_name == "SPEND2"

    @pytest.mark.asyncio
    async def test_wrong_password(self, container: FakeVaultContainer, resolver: IdentityResolver) -> None:
        _, upload = prepare_upload(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        with pytest.raises(DecryptionError):
            await unlock_encrypted_vault(container, upload, "wrong", resolver)

    @pytest.mark.asyncio
    async def test_blank_password(self, container: FakeVaultContainer, resolver: IdentityResolver) -> None:
        _, upload = prepare_upload(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        with pytest.raises(ValidationError, match="Enter the password"):
            await unlock_encrypted_vault(container, upload, "   ", resolver)
        assert container.unlock_calls == 0

    @pytest.mark.asyncio
    async def test_watch_only_container(self, resolver: IdentityResolver) -> None:
        container = FakeVaultContainer(secrets=[VaultSecret(public_id="W", is_only_watch=True)])
        _, upload = prepare_upload(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        with pytest.raises(NoSpendableSeedsError):
            await unlock_encrypted_vault(container, upload, "hunter2", resolver)

    @pytest.mark.asyncio
    async def test_every_reveal_fails(self, resolver: IdentityResolver) -> None:
        container = FakeVaultContainer(secrets=[VaultSecret(public_id="GONE")])
        _, upload = prepare_upload(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        with pytest.raises(EmptyDerivationError):
            await unlock_encrypted_vault(container, upload, "hunter2", resolver)


class TestVaultImporter:
    """Tests for the vault pipeline state machine."""

    @pytest.fixture
    def container(self) -> FakeVaultContainer:
        container = FakeVaultContainer(secrets=[VaultSecret(public_id="SPEND1")])
        container.seeds = {"SPEND1": QUBIC_SEED}
        return container

    @pytest.fixture
    def importer(self, resolver: IdentityResolver, container: FakeVaultContainer) -> VaultImporter:
        return VaultImporter(resolver, lambda: container)

    @pytest.mark.asyncio
    async def test_plain_vault_ready(self, importer: VaultImporter) -> None:
        state = await importer.select_file(
            _json_bytes({"accounts": [{"seed": QUBIC_SEED}]}),
            "vault.json",
        )
        assert state.phase is VaultPhase.READY
        assert state.file_name == "vault.json"
        assert state.summary is not None and state.summary.accounts == 1
        assert importer.upload is None
        assert importer.connection_state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_encrypted_vault_awaits_password(self, importer: VaultImporter) -> None:
        state = await importer.select_file(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        assert state.phase is VaultPhase.AWAITING_PASSWORD
        assert state.message == "Encrypted vault detected. Enter password to unlock."
        assert importer.upload is not None
        assert importer.connection_state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_wrong_password_keeps_upload(self, importer: VaultImporter) -> None:
        await importer.select_file(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        state = await importer.unlock("wrong")

        assert state.phase is VaultPhase.ERROR
        assert importer.upload is not None

        state = await importer.unlock("hunter2")
        assert state.phase is VaultPhase.READY
        assert [a.public_id for a in state.accounts] == [identity_for(QUBIC_SEED)]
        assert importer.upload is None

    @pytest.mark.asyncio
    async def test_unlock_without_upload(self, importer: VaultImporter) -> None:
        state = await importer.unlock("hunter2")
        assert state.phase is VaultPhase.ERROR
        assert state.message == "Upload an encrypted vault before unlocking."

    @pytest.mark.asyncio
    async def test_unlock_without_backend(self, resolver: IdentityResolver) -> None:
        importer = VaultImporter(resolver)
        await importer.select_file(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        state = await importer.unlock("hunter2")
        assert state.phase is VaultPhase.ERROR
        assert "No vault container backend" in (state.message or "")

    @pytest.mark.asyncio
    async def test_invalid_json_discards_upload(self, importer: VaultImporter) -> None:
        await importer.select_file(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        state = await importer.select_file(b"{not json", "broken.json")
        assert state.phase is VaultPhase.ERROR
        assert state.message == "Vault file is not valid JSON."
        assert importer.upload is None

    @pytest.mark.asyncio
    async def test_reset(self, importer: VaultImporter) -> None:
        await importer.select_file(_json_bytes(ENCRYPTED_VAULT), "vault.qubic")
        importer.reset()
        assert importer.state.phase is VaultPhase.IDLE
        assert importer.upload is None

    @pytest.mark.asyncio
    async def test_listeners_notified(self, importer: VaultImporter) -> None:
        phases: list[VaultPhase] = []
        importer.add_listener(lambda: phases.append(importer.state.phase))
        await importer.select_file(_json_bytes({"accounts": [{"seed": QUBIC_SEED}]}), "v.json")
        assert phases == [VaultPhase.PROCESSING, VaultPhase.READY]

import pytest

from marionette_automation import vault as vault_mod
from marionette_automation.vault import PassphraseSource, VaultCipher


class StaticPassphrase(PassphraseSource):
    description = "test passphrase"

    def __init__(self, value: str):
        self.value = value
        self.calls = 0

    def get(self) -> str:
        self.calls += 1
        return self.value


@pytest.fixture
def cipher(monkeypatch) -> VaultCipher:
    monkeypatch.setattr(vault_mod, "KDF_ITERATIONS", 1000)
    return VaultCipher(StaticPassphrase("s3cret"))

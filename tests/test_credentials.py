import pytest

from chatstream_gateway.credential_store import InMemoryCredentialStore, JsonCredentialStore
from chatstream_gateway.credentials import CredentialResolver
from chatstream_gateway.crypto import encrypt_secret, generate_key
from chatstream_gateway.errors import CredentialDecryptionError, CredentialResolverError


@pytest.mark.asyncio
async def test_resolver_decrypts_stored_key():
    key = generate_key()
    store = InMemoryCredentialStore({("user_1", "openai"): encrypt_secret(key, "sk-abc")})
    resolver = CredentialResolver(store, key)
    assert await resolver.resolve("user_1", "openai") == "sk-abc"


@pytest.mark.asyncio
async def test_resolver_returns_none_when_missing():
    resolver = CredentialResolver(InMemoryCredentialStore(), generate_key())
    assert await resolver.resolve("user_1", "anthropic") is None


@pytest.mark.asyncio
async def test_resolver_raises_on_undecryptable_value():
    store = InMemoryCredentialStore({("user_1", "openai"): encrypt_secret(generate_key(), "sk-abc")})
    resolver = CredentialResolver(store, generate_key())
    with pytest.raises(CredentialDecryptionError):
        await resolver.resolve("user_1", "openai")


@pytest.mark.asyncio
async def test_resolver_wraps_store_failures():
    class BrokenStore:
        async def get_credential(self, user_id, provider):
            raise ConnectionError("db down")

    resolver = CredentialResolver(BrokenStore(), generate_key())
    with pytest.raises(CredentialResolverError):
        await resolver.resolve("user_1", "openai")


@pytest.mark.asyncio
async def test_resolver_does_not_cache_between_calls():
    key = generate_key()
    store = InMemoryCredentialStore()
    resolver = CredentialResolver(store, key)
    assert await resolver.resolve("user_1", "gemini") is None

    store.put_encrypted("user_1", "gemini", encrypt_secret(key, "AIza-new"))
    assert await resolver.resolve("user_1", "gemini") == "AIza-new"


@pytest.mark.asyncio
async def test_json_store_persists_only_ciphertext(tmp_path):
    key = generate_key()
    path = tmp_path / "credentials.json"
    store = JsonCredentialStore(str(path))

    assert await store.get_credential("user_1", "anthropic") is None

    store.put_credential("user_1", "anthropic", "sk-ant-secret", encryption_key=key)

    assert "sk-ant-secret" not in path.read_text(encoding="utf-8")
    resolver = CredentialResolver(store, key)
    assert await resolver.resolve("user_1", "anthropic") == "sk-ant-secret"
    assert await resolver.resolve("user_1", "openai") is None
    assert await resolver.resolve("user_2", "anthropic") is None

import pytest

from chatstream_gateway.routing import ProviderKind, accepts_temperature, select_provider


@pytest.mark.parametrize(
    "model,provider,model_id",
    [
        ("gpt-4o", ProviderKind.OPENAI, "gpt-4o"),
        ("claude-3-5-sonnet-20241022", ProviderKind.ANTHROPIC, "claude-3-5-sonnet-20241022"),
        ("gemini-2.0-flash", ProviderKind.GEMINI, "gemini-2.0-flash"),
        ("deepseek-chat", ProviderKind.DEEPSEEK, "deepseek-chat"),
        ("llama3.1:70b", ProviderKind.META, "llama3.1:70b"),
        ("openrouter/mistralai/mistral-large", ProviderKind.OPENROUTER, "mistralai/mistral-large"),
        ("Claude-Opus", ProviderKind.ANTHROPIC, "Claude-Opus"),
        ("some-unknown-model", ProviderKind.OPENAI, "some-unknown-model"),
    ],
)
def test_select_provider(model, provider, model_id):
    target = select_provider(model)
    assert target.provider is provider
    assert target.model_id == model_id


def test_empty_model_falls_back_to_default():
    assert select_provider("").provider is ProviderKind.OPENAI
    assert select_provider("   ").model_id == "gpt-4o"
    assert select_provider(None).model_id == "gpt-4o"


def test_select_provider_is_deterministic():
    assert select_provider("gemini-1.5-pro") == select_provider("gemini-1.5-pro")


def test_reasoning_models_reject_temperature():
    assert accepts_temperature("gpt-4o")
    assert accepts_temperature("claude-3-haiku")
    assert not accepts_temperature("o1-mini")
    assert not accepts_temperature("o3")
    assert not accepts_temperature("deepseek-reasoner")
    assert not accepts_temperature("openai/o4-mini")

# MemCore — Integrations
from memcore.integrations.llm_client import (
    BaseLLMClient,
    LLMResponse,
    MockLLMClient,
    AzureOpenAIClient,
)

"""LLM Provider abstraction for the field-extraction collaborator.

To add a new LLM backend:
1. Implement a class that subclasses LLMProvider and implements generate().
2. Call register_provider("name", factory) where factory is a callable (config_dict) -> LLMProvider.
3. Add a YAML under app/llm_configs/ with provider: "name" and any provider-specific keys.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Any
import asyncio
import json
import logging
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)

# Registry: provider name -> factory(config: dict) -> LLMProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], "LLMProvider"]] = {}


def register_provider(name: str, factory: Callable[[Dict[str, Any]], "LLMProvider"]) -> None:
    """Register an LLM provider. factory(config_dict) must return an LLMProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    """Return registered provider names."""
    return sorted(_PROVIDER_REGISTRY.keys())


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    generate() accepts optional keyword args understood by every provider:
    system (system prompt), max_tokens, temperature.
    """

    model: str = ""

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete LLM response."""
        pass


def _ollama_request(base_url: str, payload: dict, timeout: float) -> tuple[str | None, str | None]:
    """Blocking Ollama HTTP request. Returns (error_msg, None) on failure or (None, response) on success."""
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        f"{base_url.rstrip('/')}/api/generate",
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
            d = json.loads(body)
            return (None, d.get("response", ""))
    except urllib.error.HTTPError as e:
        try:
            err_body = e.read().decode("utf-8")
        except Exception:
            err_body = ""
        return (f"Ollama API error: {e.code} - {err_body}", None)
    except Exception as e:
        return (str(e), None)


class OllamaProvider(LLMProvider):
    """Ollama provider for local development. Uses urllib (no aiohttp)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        num_predict: int = 4096,
        request_timeout: float = 120.0,
    ):
        self.base_url = base_url
        self.model = model
        self.num_predict = num_predict
        self.request_timeout = request_timeout

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete response from Ollama (JSON mode). Blocking call runs in a thread."""
        opts = {"num_predict": kwargs.get("max_tokens") or self.num_predict}
        if kwargs.get("temperature") is not None:
            opts["temperature"] = kwargs["temperature"]
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": opts,
        }
        if kwargs.get("system"):
            payload["system"] = kwargs["system"]
        err, text = await asyncio.to_thread(_ollama_request, self.base_url, payload, self.request_timeout)
        if err:
            raise RuntimeError(err)
        return text or ""


def _vertex_generate_sync(model_name: str, system: str | None, prompt: str, gen_config: dict) -> str:
    """Blocking Vertex AI (Gemini) generate. Run via asyncio.to_thread to avoid blocking the event loop."""
    from vertexai.generative_models import GenerativeModel
    model = GenerativeModel(model_name, system_instruction=system) if system else GenerativeModel(model_name)
    response = model.generate_content(prompt, generation_config=gen_config)
    return response.text or ""


class VertexAIProvider(LLMProvider):
    """Vertex AI (Gemini) provider for production. Sync SDK calls run off the event loop."""

    def __init__(self, project_id: str, location: str = "us-central1", model: str = "gemini-1.5-flash"):
        try:
            import vertexai
        except ImportError:
            raise ImportError("google-cloud-aiplatform is required for Vertex AI provider. Install with: pip install -e \".[vertex]\"")
        vertexai.init(project=project_id, location=location)
        self.model = model

    def _generation_config(self, **kwargs) -> dict:
        cfg = {"temperature": 0.0, "response_mime_type": "application/json"}
        if kwargs.get("temperature") is not None:
            cfg["temperature"] = kwargs["temperature"]
        if kwargs.get("max_tokens"):
            cfg["max_output_tokens"] = kwargs["max_tokens"]
        return cfg

    async def generate(self, prompt: str, **kwargs) -> str:
        gen_config = self._generation_config(**kwargs)
        return await asyncio.to_thread(_vertex_generate_sync, self.model, kwargs.get("system"), prompt, gen_config)


def _ollama_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OllamaProvider from config dict (for registry)."""
    ollama = config.get("ollama") or {}
    from app.config import OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_NUM_PREDICT
    base_url = ollama.get("base_url") or OLLAMA_BASE_URL
    model = config.get("model") or OLLAMA_MODEL
    options = config.get("options") or {}
    num_predict = options.get("num_predict")
    if num_predict is None:
        num_predict = OLLAMA_NUM_PREDICT
    return OllamaProvider(base_url=base_url, model=model, num_predict=int(num_predict))


def _vertex_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build VertexAIProvider from config dict (for registry)."""
    vertex = config.get("vertex") or {}
    from app.config import VERTEX_PROJECT_ID, VERTEX_LOCATION, VERTEX_MODEL
    project_id = vertex.get("project_id") or VERTEX_PROJECT_ID
    if not project_id:
        raise ValueError("Vertex AI requires project_id (vertex.project_id or VERTEX_PROJECT_ID)")
    location = vertex.get("location") or VERTEX_LOCATION
    model = config.get("model") or VERTEX_MODEL
    return VertexAIProvider(project_id=project_id, location=location, model=model)


def _openai_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OpenAIProvider from config dict (for registry)."""
    from app.config import OPENAI_API_KEY, OPENAI_MODEL
    from app.services.llm_provider_openai import OpenAIProvider
    openai_config = config.get("openai") or {}
    api_key = openai_config.get("api_key") or OPENAI_API_KEY
    if not api_key:
        raise ValueError("OpenAI requires api_key (openai.api_key or OPENAI_API_KEY)")
    model = config.get("model") or OPENAI_MODEL
    return OpenAIProvider(api_key=api_key, model=model, base_url=openai_config.get("base_url"))


register_provider("ollama", _ollama_factory)
register_provider("vertex", _vertex_factory)
register_provider("openai", _openai_factory)


def build_provider(config: Dict[str, Any]) -> LLMProvider:
    """Resolve config["provider"] through the registry and build it."""
    provider_name = (config.get("provider") or "").lower().strip()
    factory = _PROVIDER_REGISTRY.get(provider_name)
    if not factory:
        raise ValueError(f"Unknown LLM provider: {provider_name!r}. Registered: {list_providers()}")
    return factory(config)

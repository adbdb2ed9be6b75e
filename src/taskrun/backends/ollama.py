from __future__ import annotations

from taskrun.backends.base import AgentBackend


class OllamaBackend(AgentBackend):
    name = "ollama"
    default_binary = "ollama"
    default_model = "llama3.2:3b"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        return [self.binary, "run", self.resolve_model(model), prompt]

from __future__ import annotations

from taskrun.backends.base import AgentBackend


class GeminiBackend(AgentBackend):
    name = "gemini"
    default_binary = "gemini"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "--yolo"]
        requested_model = self.resolve_model(model)
        if requested_model:
            command.extend(["-m", requested_model])
        command.extend(["-p", prompt])
        return command

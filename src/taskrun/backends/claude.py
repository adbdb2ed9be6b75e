from __future__ import annotations

from taskrun.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "--dangerously-skip-permissions"]
        requested_model = self.resolve_model(model)
        if requested_model:
            command.extend(["--model", requested_model])
        command.extend(["-p", prompt])
        return command

from __future__ import annotations

from taskrun.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        # Non-interactive sandboxed mode; works outside a git checkout too.
        command = [self.binary, "exec", "--full-auto", "--skip-git-repo-check"]
        requested_model = self.resolve_model(model)
        if requested_model:
            command.extend(["-m", requested_model])
        command.append(prompt)
        return command

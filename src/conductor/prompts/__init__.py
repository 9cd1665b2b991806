from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from string import Template

FALLBACK_PREAMBLE = """You are the agent for one phase of a conductor session.

- Session ID: $session_id
- Phase: $phase_name ($phase_id)
$repo_section

Call conductor_phase_complete when the phase is done."""

FALLBACK_LOOP = "Loop target: $target. Current iteration: $current of $maximum ($trigger)."


@dataclass(slots=True)
class LoopInfo:
    loop_to: int
    target_phase_name: str
    is_self_loop: bool
    max_iterations: int
    condition: str
    current_iteration: int


def load_template(name: str, fallback: str) -> Template:
    try:
        text = resources.files("conductor.prompts").joinpath(name).read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError):
        text = fallback
    return Template(text.rstrip("\n"))


def build_system_preamble(
    *,
    session_id: str,
    phase_id: str,
    phase_name: str,
    repos: list[tuple[str, str]],
    tool_server_name: str = "conductor",
    loop: LoopInfo | None = None,
) -> str:
    if len(repos) == 1:
        repo_section = f"- Repository: {repos[0][0]} ({repos[0][1]})"
    else:
        lines = [f"  {index}. {name} ({path})" for index, (name, path) in enumerate(repos, 1)]
        repo_section = "- Repositories:\n" + "\n".join(lines)

    preamble = load_template("preamble.md", FALLBACK_PREAMBLE).safe_substitute(
        session_id=session_id,
        phase_id=phase_id,
        phase_name=phase_name,
        repo_section=repo_section,
        server=tool_server_name,
    )
    if loop is None:
        return preamble

    target = f"Phase {loop.loop_to + 1}: {loop.target_phase_name}"
    if loop.is_self_loop:
        target += " (self-loop)"
    trigger = "agent decides" if loop.condition == "agent_signal" else "human approval"
    loop_section = load_template("loop.md", FALLBACK_LOOP).safe_substitute(
        target=target,
        current=loop.current_iteration,
        maximum=loop.max_iterations,
        trigger=trigger,
    )
    return f"{preamble}\n\n{loop_section.strip()}"

"""Prompt construction for agent calls.

Agent user templates are Jinja2 text rendered in a sandbox with two
variables: ``markdown`` (the resolved input document) and ``context``
(operator notes, may be empty). Substituted values are never re-parsed as
template syntax, so a document containing ``{{`` is passed through verbatim.

Example template:

    Improve the following document.
    {% if context %}
    Take these notes into account:
    {{ context }}
    {% endif %}
    {{ markdown }}
"""

from dataclasses import dataclass

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from refinery.core.errors import AgentConfigError
from refinery.core.models import Agent


@dataclass
class AgentPrompts:
    system: str
    user: str


class PromptBuilder:
    """Builds the (system, user) prompt pair for one agent call."""

    def __init__(self) -> None:
        # SECURITY: Templates are operator-editable, so render in a sandbox.
        # StrictUndefined raises on unknown variables (catches typos).
        self.jinja_env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def check(self, agent: Agent) -> None:
        """Raise AgentConfigError if the agent cannot be used for a call."""
        if not agent.is_active:
            raise AgentConfigError(
                f"Agent '{agent.name}' is inactive", details={"agent": agent.name}
            )
        if not agent.system_prompt.strip():
            raise AgentConfigError(
                f"Agent '{agent.name}' has an empty system prompt",
                details={"agent": agent.name},
            )
        if not agent.user_prompt_template.strip():
            raise AgentConfigError(
                f"Agent '{agent.name}' has an empty user prompt template",
                details={"agent": agent.name},
            )

    def build(self, agent: Agent, markdown: str, context: str | None = None) -> AgentPrompts:
        self.check(agent)
        try:
            template = self.jinja_env.from_string(agent.user_prompt_template)
            user = template.render(markdown=markdown, context=context or "")
        except TemplateError as e:
            raise AgentConfigError(
                f"Agent '{agent.name}' has an invalid user prompt template: {e}",
                details={"agent": agent.name},
            ) from e
        return AgentPrompts(system=agent.system_prompt, user=user)

    def validate_template(self, template_text: str) -> None:
        """Parse a template without rendering it (used when loading agents)."""
        try:
            self.jinja_env.parse(template_text)
        except TemplateError as e:
            raise AgentConfigError(f"Invalid user prompt template: {e}") from e

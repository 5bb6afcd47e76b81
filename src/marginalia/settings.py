from pydantic import BaseModel, ConfigDict, Field


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful writing assistant. "
    "Provide constructive feedback on notes."
)


class TurnSettings(BaseModel):
    """Immutable configuration supplied with each turn.

    ``model`` is a ``"<backend>/<model>"`` string such as
    ``"anthropic/claude-sonnet-4-20250514"``. ``idle_timeout`` bounds the
    wait for each backend event; ``None`` waits forever. An empty
    ``enabled_tools`` advertises every registered local tool and no
    server tools.
    """

    model_config = ConfigDict(frozen=True)

    model: str = "anthropic/claude-sonnet-4-20250514"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_steps: int = Field(default=10, ge=1)
    max_tokens: int = Field(default=2000, ge=1)
    thinking_budget_tokens: int = Field(default=1000, ge=0)
    enabled_tools: tuple[str, ...] = ()
    idle_timeout: float | None = Field(default=None, gt=0)

    @property
    def thinking(self) -> bool:
        return self.thinking_budget_tokens > 0

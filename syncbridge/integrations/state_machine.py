from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Sequence


@dataclass
class StateMachineStep:
    needs_input: bool = False
    prompt: str | bool = False
    prompt_is_secret: bool = False
    post_to_url: str = ""
    complete: bool = False
    output: str = ""
    error_code: str | None = None

    def prompting(self, prompt: str, *, secret: bool = False, post_to_url: str) -> "StateMachineStep":
        self.needs_input = True
        self.prompt = prompt
        self.prompt_is_secret = secret
        self.post_to_url = post_to_url
        self.complete = False
        return self

    def completed(self) -> "StateMachineStep":
        self.needs_input = False
        self.prompt = False
        self.prompt_is_secret = False
        self.post_to_url = ""
        self.complete = True
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def field_is_set(value: Any) -> bool:
    # Transient integrations carry None where persisted ones carry "".
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


@dataclass(frozen=True)
class Requirement:
    field: str
    prompt: str
    output: str
    secret: bool = False
    # Overrides the default "attribute is non-blank" check.
    is_met: Callable[[Any], bool] | None = None

    def satisfied_by(self, service_integration: Any) -> bool:
        if self.is_met is not None:
            return self.is_met(service_integration)
        return field_is_set(getattr(service_integration, self.field, None))


def evaluate_requirements(
    service_integration: Any,
    requirements: Sequence[Requirement],
    *,
    transition_url: Callable[[str], str],
    completion_output: str,
) -> StateMachineStep:
    # First unmet requirement wins; the result depends only on current field values.
    for requirement in requirements:
        if requirement.satisfied_by(service_integration):
            continue
        step = StateMachineStep(output=requirement.output)
        return step.prompting(
            requirement.prompt,
            secret=requirement.secret,
            post_to_url=transition_url(requirement.field),
        )
    return StateMachineStep(output=completion_output).completed()

"""
Errors raised by the generation pipeline.

Fatal errors propagate unchanged to the caller of ExamAssembler.assemble;
the router maps them to HTTP responses through status_code and to_detail().
"""

from typing import List, Optional


class GenerationError(Exception):
    """
    Base error for completion, synthesis and assembly failures.

    rule_id / section are filled in by the assembler when the error was
    raised while satisfying a blueprint rule.
    """
    status_code = 500
    rule_id: Optional[int] = None
    section: Optional[str] = None

    def to_detail(self) -> dict:
        detail = {"error": type(self).__name__, "message": str(self)}
        if self.rule_id is not None:
            detail["rule_id"] = self.rule_id
        if self.section is not None:
            detail["section"] = self.section
        return detail


class CredentialsExhaustedError(GenerationError):
    """Every credential in the pool was rate-limited or unavailable."""
    status_code = 502

    def __init__(self, attempts: int, pool_size: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.pool_size = pool_size
        self.last_error = last_error
        super().__init__(
            f"All {pool_size} API keys exhausted after {attempts} attempts"
            + (f": {last_error}" if last_error else "")
        )

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail.update({"attempts": self.attempts, "pool_size": self.pool_size})
        return detail


class MalformedResponseError(GenerationError):
    """Model output could not be parsed into the expected structure."""
    status_code = 502

    def __init__(self, stage: str, message: str, raw: str = ""):
        self.stage = stage
        self.raw = raw
        super().__init__(f"[{stage}] {message}")

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["stage"] = self.stage
        return detail


class InsufficientPoolError(GenerationError):
    """A use_existing rule matched fewer bank questions than it needs."""
    status_code = 400

    def __init__(
        self,
        question_type: str,
        tag_names: List[str],
        needed: int,
        found: int,
        section: Optional[str] = None,
        rule_id: Optional[int] = None,
    ):
        self.question_type = question_type
        self.tag_names = list(tag_names)
        self.needed = needed
        self.found = found
        self.section = section
        self.rule_id = rule_id
        tags = ", ".join(self.tag_names) if self.tag_names else "Any"
        super().__init__(
            f"Not enough unique questions available for Rule "
            f"(Type: {question_type}, Tags: {tags}). Needed {needed}, Found {found}."
        )

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail.update({
            "rule_id": self.rule_id,
            "section": self.section,
            "question_type": self.question_type,
            "tags": self.tag_names,
            "needed": self.needed,
            "found": self.found,
        })
        return detail


class SynthesisShortfallError(GenerationError):
    """The pipeline produced fewer questions than the rule requested."""
    status_code = 422

    def __init__(self, needed: int, produced: int, stage: str = "extract"):
        self.needed = needed
        self.produced = produced
        self.stage = stage
        super().__init__(
            f"Synthesis produced {produced} of {needed} requested questions ({stage})"
        )

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail.update({"needed": self.needed, "produced": self.produced, "stage": self.stage})
        return detail


class InvalidRuleError(GenerationError):
    """A blueprint rule cannot be synthesized as written (unknown type, bad difficulty)."""
    status_code = 400

    def __init__(self, rule_id: int, section: Optional[str], reason: str):
        self.rule_id = rule_id
        self.section = section
        self.reason = reason
        super().__init__(f"Rule {rule_id} in section '{section}' cannot be synthesized: {reason}")


class BlueprintNotFoundError(GenerationError):
    status_code = 404

    def __init__(self, blueprint_id: int):
        self.blueprint_id = blueprint_id
        super().__init__(f"Blueprint {blueprint_id} not found")

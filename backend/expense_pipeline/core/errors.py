from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised by the expense pipeline."""

    code = "pipeline_error"


class ValidationInputError(PipelineError):
    """Malformed event, date or policy document. Not retryable."""

    code = "validation_input_error"


class InvalidExpenseDateError(ValidationInputError):
    code = "invalid_expense_date"

    def __init__(self, raw_date: object):
        self.raw_date = raw_date
        super().__init__(f"Invalid expense date: {raw_date!r}")


class ConversionServiceError(PipelineError):
    """The currency conversion service failed or answered with an invalid payload."""

    code = "conversion_service_error"


class PersistenceError(PipelineError):
    code = "persistence_error"


class RuleEvaluationError(PipelineError):
    code = "rule_evaluation_error"

    def __init__(self, rule_name: str, cause: BaseException):
        self.rule_name = rule_name
        super().__init__(f"Rule {rule_name} failed: {cause}")

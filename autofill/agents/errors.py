"""Error taxonomy for the field resolution pipeline."""


class ResolutionError(RuntimeError):
    """Terminal pipeline failure."""


class AnalysisFailure(ResolutionError):
    pass


class SynthesisFailure(ResolutionError):
    pass


class RetriesExhausted(ResolutionError):
    def __init__(self, retries: int, reason: str):
        super().__init__(f"Validation failed after {retries} retries: {reason}")
        self.retries = retries
        self.reason = reason


class ResearchFailure(RuntimeError):
    """Research call failed; the pipeline treats this as non-fatal."""

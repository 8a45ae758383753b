from .runtime import (  # noqa: F401
    ContinuationGateConfig,
    RuntimeContinuationGateError,
    SemanticIRInputError,
    run_semantic_ir,
)

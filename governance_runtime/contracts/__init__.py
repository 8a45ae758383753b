from .validator import (  # noqa: F401
    SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION,
    SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION,
    SUPPORTED_VERIFICATION_CONTRACT_SCHEMA_VERSION,
    ContractValidationError,
    load_policy_profile,
    load_runtime_contracts,
    load_semantic_ir,
    load_verification_contract,
)

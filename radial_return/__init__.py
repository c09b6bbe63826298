"""
Generalized radial-return stress update for anisotropic creep and plasticity.

Provides a bounded scalar return-mapping solver, a radial-return engine with
Hill anisotropy, classical flow models (power-law creep, isotropic
plasticity) and a tiled Legendre reduced-order creep model.
"""

from .exceptions import (
    RadialReturnError,
    ConfigurationError,
    ConvergenceFailure,
    DomainViolation,
    IntervalError,
)
from .state import (
    InternalStateVariables,
    QuadraturePointState,
    StressUpdateResult,
)
from .return_mapping import (
    ReturnMappingSolver,
    ReturnMappingStatus,
)
from .material_models import (
    deviatoric,
    isotropic_elasticity_tensor,
    HillAnisotropy,
    NoIsotropicHardeningModel,
    LinearIsotropicHardeningModel,
    VoceIsotropicHardeningModel,
    PowerLawCreepModel,
    IsotropicPlasticityModel,
)
from .laromance import (
    ROMData,
    ROMInputTransform,
    WindowFailure,
    LAROMANCEStressUpdate,
    trapezoidal_rule,
)
from .solver import (
    TimeStepAdvisor,
    GeneralizedRadialReturnStressUpdate,
    CreepPointSolver,
    update_points,
)

__all__ = [
    "RadialReturnError",
    "ConfigurationError",
    "ConvergenceFailure",
    "DomainViolation",
    "IntervalError",
    "InternalStateVariables",
    "QuadraturePointState",
    "StressUpdateResult",
    "ReturnMappingSolver",
    "ReturnMappingStatus",
    "deviatoric",
    "isotropic_elasticity_tensor",
    "HillAnisotropy",
    "NoIsotropicHardeningModel",
    "LinearIsotropicHardeningModel",
    "VoceIsotropicHardeningModel",
    "PowerLawCreepModel",
    "IsotropicPlasticityModel",
    "ROMData",
    "ROMInputTransform",
    "WindowFailure",
    "LAROMANCEStressUpdate",
    "trapezoidal_rule",
    "TimeStepAdvisor",
    "GeneralizedRadialReturnStressUpdate",
    "CreepPointSolver",
    "update_points",
]

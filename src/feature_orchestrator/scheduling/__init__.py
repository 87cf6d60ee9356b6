from .resolver import Eligibility, eligible, plan_phases, validate_dependencies

__all__ = ["Eligibility", "eligible", "plan_phases", "validate_dependencies"]

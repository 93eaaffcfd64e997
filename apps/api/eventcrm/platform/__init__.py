from eventcrm.platform.append_only import (
    MutationPolicy,
    check_mutation,
    install_append_only_guard,
    policy_for,
    register_policy,
)
from eventcrm.platform.unit_of_work import unit_of_work

__all__ = [
    "MutationPolicy",
    "check_mutation",
    "install_append_only_guard",
    "policy_for",
    "register_policy",
    "unit_of_work",
]

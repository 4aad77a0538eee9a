"""
Core reconciliation building blocks.

This package holds the pure and store-facing pieces the reconciler composes:
- Topology resolution and workload synthesis
- Dependency gating on prerequisite secrets
- Phase state machine and termination policy engine
- Work queue and admission checks
"""

# Import directly from submodules:
# from dbaas_operator.core.topology import resolve_node_roles
# from dbaas_operator.core.workload import build_statefulset
# from dbaas_operator.core.state_machine import PhaseStateMachine
# from dbaas_operator.core.termination import TerminationEngine

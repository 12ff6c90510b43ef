"""Resource models, reconcilers and admission handlers for OAM sidecar, rollout and pod-spec workloads."""

__version__ = "0.1.0"
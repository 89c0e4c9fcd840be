"""Monitoring, anomaly detection and automated remediation for remediator.

This package provides:
- HealthMonitor: Rolling-window metrics, alerts and health reports
- AnomalyDetector: Isolation forest plus a labeled pattern library
- PatchGenerator: Strategy-driven patch candidates for inferred bug types
- SandboxValidator: Out-of-process test execution with timeouts and rlimits
- SelfHealingCoordinator: The closed healing loop and its audit trail
"""

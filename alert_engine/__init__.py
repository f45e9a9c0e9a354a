"""Clinical observation alert rule engine.

Evaluates patient-reported and device-reported observations against a
library of alert rules and produces deduplicated, cooldown-aware alert
instances. Storage, notification delivery and billing stay behind the
protocols in ``alert_engine.services.ports``.
"""

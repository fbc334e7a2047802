"""
Monitoring & alerting pipeline.

Runs health checks and creative fatigue detection over every monitored
client, turns problems into deduplicated alerts and resolves them again
once the underlying check reports healthy. Entry points (API, CLI,
scheduler) go through MonitoringService.
"""

"""
AdWatch - Performance Monitoring & Alerting for Agency Ad Accounts

Runs health checks and creative fatigue detection against every enabled
client's ad accounts and turns detected problems into deduplicated,
lifecycle-managed alerts.
"""

__version__ = "0.1.0"
__author__ = "AdWatch Team"

"""Payout statements, roaming clearing and revenue reporting."""

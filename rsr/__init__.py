"""Replica Sync Reconciler (RSR).

Keeps one failover replica per service in sync with its platform-managed
primary container so a reverse proxy can shift traffic to the replica while
the primary is being redeployed:
 - discovers the primary by name pattern
 - checks health and version through an in-container HTTP request
 - detects drift by version, or by image identity when no version is available
 - recreates the replica as a clone of the primary (image, env, labels, mounts)

All decisions are derived from live inspection; nothing is persisted.
"""

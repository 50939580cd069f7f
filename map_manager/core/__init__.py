"""
Core engine for keeping installed map data in line with the subscription.

The `Manager` acts as the facade used by the CLI and the serving layer. It
delegates resolution of what is needed to the `AvailabilityResolver`, runs
downloads one at a time through the `DownloadOrchestrator` and reclaims
storage with the `RetentionScanner`.
"""

"""
DORA metrics over stored pull requests, workflow runs and incidents.

- branch_filter: narrow rows to a team's prod/stage/dev (or custom) branches
- calculations: pure statistics, trend bucketing and result models
- engine: loads rows per period and assembles a DoraMetricsReport
"""

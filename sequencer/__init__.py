"""
Outreach Sequencer: multi-tenant campaign sequence execution engine.

Turns declarative multi-step, multi-channel sequences into safely paced,
per-tenant, per-contact executions against external messaging gateways.

Modules:
    rate_limits.py        - Platform limits, account-age multipliers, budgets
    sequences.py          - Immutable sequence definitions, rendering, branching
    sequence_templates.py - Pre-built sequences (cold email, LinkedIn, multi-channel)
    execution_store.py    - Durable execution state + versioned definitions (MongoDB)
    tenants.py            - Tenant accounts, counters, hard caps, batch fairness
    gateway.py            - REST (aiohttp) and SMTP (aiosmtplib) messaging gateways
    dispatcher.py         - Executes one step of one claimed execution
    scheduler.py          - Claim loop, bounded worker pool, graceful shutdown
    sending_window.py     - Business-hours / holiday window for flagged steps
    alerts.py             - Webhook alerting (Slack/Telegram/Discord)
    errors.py             - Exception taxonomy
"""

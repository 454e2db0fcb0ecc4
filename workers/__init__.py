"""
Campaign workers — queue consumers for the two asynchronous phases.

Modules:
    job_queue.py     — MongoDB-backed job queue (retries, backoff, delays) + worker pool base
    draft_worker.py  — Generates per-lead drafts via the LLM (email-drafts queue)
    send_worker.py   — Initial and follow-up sends (send-email queue)
    alerts.py        — Webhook alerting (Slack/Telegram/Discord) for dead jobs
    scheduler.py     — Runs both worker pools in one AsyncIO loop
"""

"""Email summary of a finished run over SMTP."""

from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from visibility_check import config
from visibility_check.models import ProviderOutcome, Run, ScoreSnapshot

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {
    "openai": "ChatGPT",
    "grok": "Grok",
    "deepseek": "DeepSeek",
    "perplexity": "Perplexity",
    "gemini": "Gemini",
    "claude": "Claude",
    "google_ai_overview": "Google AI Overview",
}


def _score_color(score: float) -> str:
    if score >= 50:
        return "#00ff88"
    elif score >= 20:
        return "#ffa502"
    return "#ff4757"


def _status_label(outcome: ProviderOutcome) -> str:
    if not outcome.settled_ok:
        return outcome.status.upper()
    return "✓ mentioned" if outcome.mentioned else "✗ not mentioned"


def build_plain_text(run: Run, outcomes: list[ProviderOutcome], snapshot: ScoreSnapshot) -> str:
    plain_text = f"""
VISIBILITY CHECK - {run.domain}
Keyword: {run.keyword} ({run.country}, {run.language})

Visibility score: {snapshot.weighted_score_percent}%
Mentioned by {snapshot.mention_count} of {snapshot.providers_total} providers

BY PROVIDER:
"""
    for outcome in outcomes:
        label = PROVIDER_LABELS.get(outcome.provider, outcome.provider)
        plain_text += f"- {label}: {_status_label(outcome)}"
        rank = snapshot.brand_rank.get(outcome.provider)
        if rank is not None:
            plain_text += f" (rank #{rank})"
        plain_text += "\n"
        if outcome.evidence:
            plain_text += f"    {outcome.evidence}\n"
        competitors = snapshot.competitors_per_provider.get(outcome.provider) or []
        if competitors:
            plain_text += f"    Mentioned before you: {', '.join(competitors)}\n"
    return plain_text


def build_html(run: Run, outcomes: list[ProviderOutcome], snapshot: ScoreSnapshot) -> str:
    score = snapshot.weighted_score_percent
    rows = ""
    for outcome in outcomes:
        label = PROVIDER_LABELS.get(outcome.provider, outcome.provider)
        rank = snapshot.brand_rank.get(outcome.provider)
        competitors = snapshot.competitors_per_provider.get(outcome.provider) or []
        rows += f"""
            <tr>
                <td style="padding: 12px; border-bottom: 1px solid #2a2a3a; color: #fff;">{html.escape(label)}</td>
                <td style="padding: 12px; border-bottom: 1px solid #2a2a3a;">{html.escape(_status_label(outcome))}</td>
                <td style="padding: 12px; border-bottom: 1px solid #2a2a3a;">{'#' + str(rank) if rank is not None else '-'}</td>
                <td style="padding: 12px; border-bottom: 1px solid #2a2a3a; color: #aaa;">{html.escape(', '.join(competitors))}</td>
            </tr>
            """

    return f"""
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #0a0a0f; color: #e0e0e0; padding: 20px;">
        <div style="max-width: 600px; margin: 0 auto;">
            <h1 style="color: #fff; margin: 0 0 8px 0;">🔍 Visibility Check</h1>
            <p style="color: #8b8b9e; margin: 0 0 24px 0;">{html.escape(run.domain)} · "{html.escape(run.keyword)}" · {run.country} / {run.language}</p>
            <div style="background: #1a1a24; border-radius: 8px; padding: 16px; margin: 16px 0; text-align: center;">
                <div style="font-size: 48px; font-weight: bold; color: {_score_color(score)};">{score}%</div>
                <div style="color: #8b8b9e;">Mentioned by {snapshot.mention_count} of {snapshot.providers_total} providers</div>
            </div>
            <table style="width: 100%; border-collapse: collapse; background: #1a1a24; border-radius: 8px;">
                <tr>
                    <th style="padding: 12px; text-align: left; color: #8b8b9e;">Provider</th>
                    <th style="padding: 12px; text-align: left; color: #8b8b9e;">Result</th>
                    <th style="padding: 12px; text-align: left; color: #8b8b9e;">Rank</th>
                    <th style="padding: 12px; text-align: left; color: #8b8b9e;">Before you</th>
                </tr>
                {rows}
            </table>
        </div>
    </body>
    </html>
    """


def _send(msg: MIMEMultipart) -> None:
    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
        server.starttls()
        server.login(config.SMTP_USER, config.SMTP_PASSWORD)
        server.send_message(msg)


def send_run_summary(
    run: Run,
    outcomes: list[ProviderOutcome],
    snapshot: ScoreSnapshot,
    to: Optional[str] = None,
) -> bool:
    """Send the summary to `to` (default: the run's email). Never raises."""
    to = to or run.email
    if not to:
        return False
    if not config.EMAIL_ENABLED:
        logger.info("📧 Email notifications disabled (no credentials configured)")
        return False

    try:
        logger.info(f"📧 Sending run summary to {to}...")
        msg = MIMEMultipart('alternative')
        msg['Subject'] = f"🔍 Visibility Check - {run.domain} - {snapshot.weighted_score_percent}%"
        msg['From'] = config.EMAIL_FROM
        msg['To'] = to
        msg.attach(MIMEText(build_plain_text(run, outcomes, snapshot), 'plain'))
        msg.attach(MIMEText(build_html(run, outcomes, snapshot), 'html'))
        _send(msg)
    except Exception as e:
        logger.error(f"❌ Failed to send email: {e}")
        return False

    logger.info(f"✅ Email sent successfully to {to}")
    return True


def send_test_email(to: str) -> bool:
    """Send a test email to verify configuration."""
    if not config.EMAIL_ENABLED:
        print("❌ Email not configured. Set these environment variables:")
        print("   SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD")
        return False

    try:
        msg = MIMEMultipart()
        msg['Subject'] = "🔍 Visibility Check - Test Email"
        msg['From'] = config.EMAIL_FROM
        msg['To'] = to

        body = f"""
        This is a test email from the visibility checker.

        Configuration:
        - SMTP Host: {config.SMTP_HOST}
        - SMTP Port: {config.SMTP_PORT}
        - From: {config.EMAIL_FROM}
        - To: {to}

        If you received this, your email configuration is working correctly!
        """
        msg.attach(MIMEText(body, 'plain'))
        _send(msg)
    except Exception as e:
        print(f"❌ Failed to send test email: {e}")
        return False

    print(f"✅ Test email sent successfully to {to}")
    return True

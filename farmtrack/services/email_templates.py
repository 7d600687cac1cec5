from __future__ import annotations

from datetime import date
from html import escape

NIGHT_RETURN_SUBJECT = "Night Return Alert - FarmTrack"

_ALERT_BOX_STYLES = {
    "night-return": "background-color:#d1ecf1;border-left:5px solid #17a2b8;color:#0c5460;",
    "general": "background-color:#fff3cd;border-left:5px solid #ffc107;color:#856404;",
}


def render_alert_email(title: str, message: str, *, alert_type: str = "general") -> str:
    box_style = _ALERT_BOX_STYLES.get(alert_type, _ALERT_BOX_STYLES["general"])
    message_html = "<br>".join(escape(line) for line in message.splitlines())
    return f"""<html>
<head>
  <meta charset="UTF-8">
  <title>FarmTrack Alert</title>
</head>
<body style="font-family:Arial,sans-serif;background-color:#f4f4f7;padding:40px;color:#333;">
  <div style="max-width:600px;margin:auto;background:#ffffff;padding:30px;border-radius:8px;">
    <h1 style="color:#2b9348;font-size:22px;text-align:center;">FarmTrack Alert Notification</h1>
    <p>Hello,</p>
    <p>You have a new alert from FarmTrack:</p>
    <div style="{box_style}padding:12px 20px;margin:20px 0;border-radius:4px;">
      <strong>{escape(title)}</strong><br>
      {message_html}
    </div>
    <p>Please log into your dashboard for more details.</p>
    <p>Stay safe,<br>Team FarmTrack</p>
  </div>
</body>
</html>
"""


def render_night_return_alert_email(title: str, message: str, local_day: date) -> tuple[str, str]:
    """Subject and HTML body for a night return alert."""
    subject = f"{NIGHT_RETURN_SUBJECT} ({local_day.isoformat()})"
    return subject, render_alert_email(title, message, alert_type="night-return")

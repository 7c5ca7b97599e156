import html
import math
from datetime import datetime, timezone, tzinfo
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from linkgate.models import AccessType, LinkStatus


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def format_expiry(expires_at: int, timezone_name: str) -> str:
    return datetime.fromtimestamp(expires_at, _zone(timezone_name)).strftime("%Y-%m-%d %H:%M")


def format_megabytes(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"


def render_status_page(status: LinkStatus, *, timezone_name: str, now: float) -> str:
    """Wait page shown on first contact. The countdown is cosmetic; the server re-checks it."""
    name = html.escape(status.file_name)
    download_href = html.escape("?" + urlencode({"t": status.token, "action": "download"}))
    if status.access_type is AccessType.REGISTERED:
        badge = '<span class="badge registered">Registered Users Only</span>'
    else:
        badge = '<span class="badge public">Public Link</span>'
    downloads = str(status.download_count)
    if status.max_downloads > 0:
        downloads += f" / {status.max_downloads}"
    expires_in = max(0, math.ceil((status.expires_at - now) / 60))
    expires_label = html.escape(format_expiry(status.expires_at, timezone_name))
    zone_label = html.escape(timezone_name)

    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta name="robots" content="noindex, nofollow">
  <title>Download: {name}</title>
  <style>
    body {{ margin:0; font-family: system-ui, -apple-system, Segoe UI, Arial, sans-serif; background:#f4f5fb; }}
    .wrap {{ max-width:600px; margin:40px auto; background:white; padding:32px; border-radius:16px; }}
    .info div {{ margin:6px 0; color:#555; }}
    .badge {{ padding:3px 10px; border-radius:12px; font-size:12px; font-weight:600; }}
    .badge.public {{ background:#e3f2fd; color:#1976d2; }}
    .badge.registered {{ background:#fff3e0; color:#f57c00; }}
    .countdown {{ font-size:64px; text-align:center; color:#667eea; margin:30px 0; }}
    .button {{ display:none; padding:16px; text-align:center; background:#667eea; color:white; border-radius:10px; text-decoration:none; }}
    .footer {{ margin-top:20px; text-align:center; font-size:12px; color:#777; }}
  </style>
</head>
<body>
  <div class="wrap">
    <h1>Download File</h1>
    <div class="info">
      <div><strong>File:</strong> {name}</div>
      <div><strong>Access Type:</strong> {badge}</div>
      <div><strong>Size:</strong> {format_megabytes(status.file_size)}</div>
      <div><strong>Downloads:</strong> {downloads}</div>
      <div><strong>Expires in:</strong> {expires_in} minutes</div>
    </div>
    <div class="countdown" id="timer" data-wait="{status.wait_remaining}">{status.wait_remaining}</div>
    <a class="button" id="download" href="{download_href}">Download Now</a>
    <div class="footer">Expires <strong>{expires_label}</strong> ({zone_label})</div>
  </div>
  <script>
    let left = {status.wait_remaining};
    const timer = document.getElementById('timer');
    const button = document.getElementById('download');
    const done = () => {{ timer.textContent = 'Ready'; button.style.display = 'block'; }};
    if (left <= 0) {{ done(); }} else {{
      const tick = setInterval(() => {{
        left--;
        timer.textContent = left;
        if (left <= 0) {{ clearInterval(tick); done(); }}
      }}, 1000);
    }}
  </script>
</body>
</html>"""

from __future__ import annotations

from html import escape

from portal.users import LoginRecord


def _daily_html(daily_stats: dict, days: int = 14) -> str:
    if not daily_stats:
        return '<span class="lbl">no visits yet</span>'
    recent = sorted(daily_stats.items(), reverse=True)[:days]
    max_visits = max((b.get("visits", 0) for _, b in recent), default=1) or 1
    rows = []
    for day, bucket in recent:
        visits = bucket.get("visits", 0)
        bar_w = max(2, int(visits / max_visits * 100))
        rows.append(
            f'<tr>'
            f'<td class="lbl">{escape(day)}</td>'
            f'<td><div class="bar" style="width:{bar_w}px"></div></td>'
            f'<td class="num">{visits}</td>'
            f'<td class="pct">{bucket.get("uniques", 0)} uniq</td>'
            f'</tr>'
        )
    return f'<table class="info">{"".join(rows)}</table>'


def _duration(seconds: int | None) -> str:
    if seconds is None:
        return '<span class="pend">active</span>'
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _logins_html(logins: list[LoginRecord]) -> str:
    if not logins:
        return '<span class="lbl">no logins yet</span>'
    rows = []
    for rec in logins:
        who = escape(rec.username or rec.email or f"#{rec.user_id}")
        rows.append(
            f'<tr>'
            f'<td class="lbl">{who}</td>'
            f'<td class="ts" style="text-align:left">{escape(rec.login_time[:19].replace("T", " "))}</td>'
            f'<td class="num">{_duration(rec.duration_seconds)}</td>'
            f'</tr>'
        )
    return f'<table class="info">{"".join(rows)}</table>'


_PAGE = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width,initial-scale=1">
<title>osint portal admin</title>
<style>
*{{box-sizing:border-box;margin:0;padding:0}}
body{{background:#0d1117;color:#c9d1d9;font:13px/1.6 "Courier New",monospace;padding:1.5rem}}
h1{{color:#58a6ff;font-size:1.1rem;margin-bottom:1rem;letter-spacing:.05em}}
h2{{color:#58a6ff;font-size:.78rem;text-transform:uppercase;letter-spacing:.12em;
    margin-bottom:.6rem;padding-bottom:.4rem;border-bottom:1px solid #21262d}}
.topbar{{display:flex;justify-content:space-between;align-items:center;
         margin-bottom:1.2rem;font-size:.78rem;color:#8b949e}}
.grid{{display:grid;grid-template-columns:1fr 1fr;gap:1rem;margin-bottom:1rem}}
.card{{background:#161b22;border:1px solid #21262d;border-radius:6px;padding:1rem}}
table.info{{width:100%;border-collapse:collapse}}
table.info td{{padding:.15rem .3rem;vertical-align:middle}}
.lbl{{color:#8b949e;min-width:5rem}}
.num{{text-align:right;min-width:3.5rem}}
.pct{{text-align:right;color:#8b949e;min-width:3rem}}
.ts{{color:#8b949e;font-size:.75rem;text-align:right}}
.pend{{color:#d29922}}
.bar{{background:#1f6feb;height:.55em;border-radius:2px;display:inline-block;min-width:2px}}
.big{{font-size:1.4rem;color:#c9d1d9;font-weight:bold}}
@media(max-width:600px){{.grid{{grid-template-columns:1fr}}}}
</style>
</head>
<body>
<h1>&#9881; osint-portal / admin</h1>
<div class="topbar">
  <span>updated: {generated}</span>
  <span>v{version}</span>
</div>

<div class="grid">
  <div class="card">
    <h2>Server</h2>
    <table class="info">
      <tr><td class="lbl">uptime</td><td class="value">{uptime}</td></tr>
      <tr><td class="lbl">accounts</td><td><span class="big">{user_count}</span></td></tr>
      <tr><td class="lbl">stats saved</td><td class="ts" style="text-align:left">{last_updated}</td></tr>
    </table>
  </div>
  <div class="card">
    <h2>Visitors</h2>
    <table class="info">
      <tr><td class="lbl">total</td><td><span class="big">{total_visitors}</span></td></tr>
      <tr><td class="lbl">unique</td><td class="value">{unique_visitors}</td></tr>
      <tr><td class="lbl">today</td><td class="value">{today_visitors}</td></tr>
    </table>
  </div>
</div>

<div class="grid">
  <div class="card">
    <h2>Daily visits</h2>
    {daily_html}
  </div>
  <div class="card">
    <h2>Recent logins</h2>
    {logins_html}
  </div>
</div>
</body>
</html>
"""


def render_admin_page(
    *,
    generated: str,
    uptime: str,
    stats: dict,
    user_count: int,
    logins: list[LoginRecord],
    version: str,
) -> str:
    return _PAGE.format(
        generated=generated,
        version=escape(version),
        uptime=uptime,
        user_count=user_count,
        last_updated=escape(stats.get("lastUpdated") or "—"),
        total_visitors=stats.get("totalVisitors", 0),
        unique_visitors=stats.get("uniqueVisitors", 0),
        today_visitors=stats.get("todayVisitors", 0),
        daily_html=_daily_html(stats.get("dailyStats") or {}),
        logins_html=_logins_html(logins),
    )

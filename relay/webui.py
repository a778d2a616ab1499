from html import escape
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse

from .components import Components, get_components
from .green_api import GreenAPIClient
from .utils import json_log

router = APIRouter()

QR_FILE = Path("storage/qr.png")

GATEWAY_SETTING_KEYS = ("GREEN_API_BASE_URL", "GREEN_API_INSTANCE_ID", "GREEN_API_API_TOKEN")


def check_auth(comps: Components, token: Optional[str]):
    expected = comps.settings.admin_password
    if expected and token != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def html_page(body: str, token: Optional[str]) -> HTMLResponse:
    html = f"""
<!doctype html>
<html>
  <head>
    <meta charset="utf-8"/>
    <title>Relay WebUI</title>
    <meta name="viewport" content="width=device-width, initial-scale=1"/>
    <style>
      :root {{ --bg: #0f1120; --card: #16182a; --muted: #8a8fa6; --text: #e7e9f5; --ok: #3ddc97; --err: #ff6b6b; }}
      * {{ box-sizing: border-box; }}
      body {{ margin: 0; font-family: Inter, system-ui, Segoe UI, Roboto, Arial, sans-serif; color: var(--text); background: var(--bg); }}
      header {{ padding: 20px; display: flex; justify-content: space-between; border-bottom: 1px solid rgba(255,255,255,0.06); }}
      .container {{ padding: 24px; max-width: 1100px; margin: 0 auto; }}
      .grid {{ display: grid; gap: 16px; grid-template-columns: repeat(auto-fit, minmax(300px, 1fr)); }}
      .card {{ background: var(--card); border: 1px solid rgba(255,255,255,0.06); border-radius: 14px; padding: 16px; }}
      .muted {{ color: var(--muted); }}
      .ok {{ color: var(--ok); }} .err {{ color: var(--err); }}
      .button {{ display: inline-block; padding: 6px 10px; border-radius: 10px; border: 1px solid rgba(255,255,255,0.12); color: #fff; text-decoration: none; background: transparent; }}
      td, th {{ border-bottom: 1px solid rgba(255,255,255,0.08); padding: 8px; font-size: 14px; text-align: left; }}
      input[type="text"] {{ width: 100%; padding: 8px; border-radius: 8px; border: 1px solid rgba(255,255,255,0.12); background: #0e1020; color: #fff; }}
      #qr {{ width: 100%; max-width: 260px; background: #fff; border-radius: 8px; padding: 8px; }}
    </style>
  </head>
  <body>
    <header>
      <div><b>WhatsApp AI Relay</b></div>
      <div><a class="button" href="/ui?token={quote(token or '')}">Refresh</a></div>
    </header>
    <div class="container">
      {body}
    </div>
  </body>
</html>
"""
    return HTMLResponse(html)


@router.get("/ui")
async def ui(comps: Components = Depends(get_components), token: Optional[str] = Query(default=None)):
    check_auth(comps, token)
    tok = quote(token or "")

    state = "not configured"
    if comps.client.configured:
        try:
            state = await comps.client.get_state_instance()
        except httpx.HTTPError as e:
            state = f"unreachable ({e.__class__.__name__})"
    state_cls = "ok" if state == "authorized" else "err"

    qr_html = ""
    if state != "authorized" and QR_FILE.exists():
        qr_html = f'<img id="qr" src="/ui/qr?token={tok}" alt="QR"/><div class="muted">Scan the QR with your WhatsApp app to log in.</div>'

    rows = "".join(
        f"<tr><td>{escape(cid)}</td><td>{length}</td>"
        f'<td><a class="button" href="/ui/contexts/delete?chat_id={quote(cid)}&token={tok}">Forget</a></td></tr>'
        for cid, length in comps.store.snapshot()
    )

    base_url = comps.db.get_setting("GREEN_API_BASE_URL", "") or ""
    instance_id = comps.db.get_setting("GREEN_API_INSTANCE_ID", "") or ""

    body = f"""
    <div class="grid">
      <div class="card">
        <h3>WhatsApp</h3>
        <div>Instance state: <span class="{state_cls}">{escape(state)}</span></div>
        <div class="muted">Model: {escape(comps.inference.model)}</div>
        {qr_html}
      </div>
      <div class="card">
        <h3>Document contexts</h3>
        <table>
          <tr><th>Chat</th><th>Chars</th><th></th></tr>
          {rows or '<tr><td colspan="3" class="muted">No documents stored</td></tr>'}
        </table>
        <p><a class="button" href="/ui/contexts/clear?token={tok}">Clear all</a></p>
      </div>
      <div class="card">
        <h3>Green API gateway</h3>
        <form action="/ui/settings?token={tok}" method="post">
          <label>Base URL</label><input type="text" name="GREEN_API_BASE_URL" value="{escape(base_url)}" placeholder="https://api.green-api.com"/>
          <label>Instance ID</label><input type="text" name="GREEN_API_INSTANCE_ID" value="{escape(instance_id)}"/>
          <label>API token</label><input type="text" name="GREEN_API_API_TOKEN" value="" placeholder="unchanged"/>
          <p><button class="button" type="submit">Save</button></p>
        </form>
      </div>
    </div>
    """
    return html_page(body, token)


@router.get("/ui/qr")
def qr(comps: Components = Depends(get_components), token: Optional[str] = Query(default=None)):
    check_auth(comps, token)
    if not QR_FILE.exists():
        raise HTTPException(404, "No QR available")
    return FileResponse(str(QR_FILE), media_type="image/png")


@router.get("/ui/contexts/clear")
def clear_contexts(comps: Components = Depends(get_components), token: Optional[str] = Query(default=None)):
    check_auth(comps, token)
    comps.store.clear()
    json_log("contexts_cleared", source="ui")
    return RedirectResponse(url=f"/ui?token={quote(token or '')}", status_code=302)


@router.get("/ui/contexts/delete")
def delete_context(
    chat_id: str,
    comps: Components = Depends(get_components),
    token: Optional[str] = Query(default=None),
):
    check_auth(comps, token)
    if not comps.store.delete(chat_id):
        raise HTTPException(404, "No context for that chat")
    json_log("context_deleted", chat_id=chat_id, source="ui")
    return RedirectResponse(url=f"/ui?token={quote(token or '')}", status_code=302)


@router.post("/ui/settings")
async def save_settings(
    request: Request,
    comps: Components = Depends(get_components),
    token: Optional[str] = Query(default=None),
):
    check_auth(comps, token)
    form = await request.form()
    for key in GATEWAY_SETTING_KEYS:
        value = str(form.get(key) or "").strip()
        # Blank fields keep the stored value
        if value:
            comps.db.set_setting(key, value)
    comps.client = GreenAPIClient.from_env(comps.db)
    json_log("gateway_settings_saved", configured=comps.client.configured)
    return RedirectResponse(url=f"/ui?token={quote(token or '')}", status_code=302)

# FILE: web/api.py
# PURPOSE: Optional FastAPI surface showing attribution results as they arrive.
import json
import asyncio
from contextlib import asynccontextmanager
from threading import Thread

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse

from core.data_models import data_lock, recent_results, run_info


class ConnectionManager:
    def __init__(self): self.active_connections = []
    async def connect(self, websocket): await websocket.accept(); self.active_connections.append(websocket)
    def disconnect(self, websocket):
        if websocket in self.active_connections: self.active_connections.remove(websocket)
    async def broadcast(self, message):
        for connection in self.active_connections[:]:
            try: await connection.send_text(message)
            except Exception: self.disconnect(connection)

manager = ConnectionManager()


def snapshot(limit=50):
    with data_lock:
        return {'type': 'update', **run_info, 'results': list(recent_results)[-limit:]}


async def broadcast_data():
    while True:
        if manager.active_connections:
            await manager.broadcast(json.dumps(snapshot()))
        await asyncio.sleep(2)

@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(broadcast_data())
    yield
    task.cancel()

app = FastAPI(lifespan=lifespan)

HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>netblame</title>
    <style>
        body { background-color: #111827; color: #e5e7eb; font-family: monospace; padding: 1.5rem; }
        td, th { padding: 0.2rem 1rem; text-align: left; }
        .failed { color: #9ca3af; }
    </style>
</head>
<body>
    <h1>netblame</h1>
    <p id="target"></p>
    <table>
        <thead><tr><th>time</th><th>proto/port</th><th>pid</th><th>process</th></tr></thead>
        <tbody id="rows"></tbody>
    </table>
    <script>
        const ws = new WebSocket(`ws://${location.host}/ws`);
        ws.onmessage = (msg) => {
            const data = JSON.parse(msg.data);
            document.getElementById('target').textContent =
                `${data.destination || ''} via ${data.interface || '?'}`;
            document.getElementById('rows').innerHTML = data.results.slice().reverse().map(r => `
                <tr class="${r.pid ? '' : 'failed'}">
                    <td>${new Date(r.timestamp * 1000).toLocaleTimeString()}</td>
                    <td>${r.protocol || '?'}/${r.source_port || '?'}</td>
                    <td>${r.pid || '-'}</td>
                    <td>${r.process_name || r.error || ''}</td>
                </tr>`).join('');
        };
    </script>
</body>
</html>
"""

@app.get("/", response_class=HTMLResponse)
async def get_root():
    return HTMLResponse(content=HTML_TEMPLATE)

@app.get("/api/results", response_class=JSONResponse)
async def api_results():
    return snapshot(limit=recent_results.maxlen)

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        await websocket.send_text(json.dumps(snapshot()))
        while True: await websocket.receive_text()
    except WebSocketDisconnect: manager.disconnect(websocket)


def start_web_server(port: int, host: str = "127.0.0.1"):
    """Serves the app from a daemon thread so the correlator keeps the main thread."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    Thread(target=server.run, daemon=True).start()
    return server

import io
import json
import queue
import threading
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from flask import Flask, request, Response, send_file, jsonify
from dotenv import load_dotenv

from storytoon import (CANVAS_SIZES, PANEL_COUNT, CharacterRef, ConfigurationError, SessionBusyError,
                       StoryboardSession, mime_type_for, panel_filename)

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)


ROOT = Path(__file__).parent

# Oldest events are dropped once this many are waiting for a stream client
EVENT_BACKLOG = 500


class RunState:
    def __init__(self, session: Optional[StoryboardSession] = None):
        self.events: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=EVENT_BACKLOG)
        self.session = session or StoryboardSession()
        self.session.on_event = self.publish
        self.thread: Optional[threading.Thread] = None
        self.panel_threads: Dict[int, threading.Thread] = {}
        # Serialises the busy check with worker start-up
        self.lock = threading.Lock()

    def publish(self, evt: Dict[str, Any]) -> None:
        while True:
            try:
                self.events.put_nowait(evt)
                return
            except queue.Full:
                try:
                    self.events.get_nowait()
                except queue.Empty:
                    pass

    def story_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def panels_running(self) -> bool:
        return any(t.is_alive() for t in self.panel_threads.values())

    def workers(self) -> List[threading.Thread]:
        return [t for t in [self.thread, *self.panel_threads.values()] if t is not None]

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self.workers():
            t.join(timeout)


state = RunState()


def story_worker(session: StoryboardSession, story: str) -> None:
    try:
        session.generate_story(story)
    except Exception as e:
        print(f"[ERROR] Story run failed: {e}")
        state.publish({"type": "error", "message": str(e)})


def panel_worker(session: StoryboardSession, index: int) -> None:
    try:
        session.regenerate_panel(index)
    except Exception as e:
        print(f"[ERROR] Panel {index + 1} regeneration failed: {e}")
        state.publish({"type": "error", "message": str(e)})


def panel_index(n: int) -> Optional[int]:
    """Map a 1-based panel number from the URL to an index."""
    if 1 <= n <= PANEL_COUNT:
        return n - 1
    return None


def ensure_client(session: StoryboardSession):
    """Build the AI client now so a bad key is reported before any work starts."""
    try:
        session.client
    except ConfigurationError as e:
        session.error = str(e)
        return jsonify({"error": str(e), "fatal": True}), 500
    return None


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/state")
def api_state():
    return jsonify(state.session.snapshot())


@app.route("/api/generate", methods=["POST"])
def api_generate():
    data = request.get_json(force=True)
    story = (data.get("story") or "").strip()
    session = state.session
    if not story:
        session.error = "Please provide a story."
        return jsonify({"error": session.error}), 400

    aspect_ratio = data.get("aspect_ratio")
    if aspect_ratio and aspect_ratio not in CANVAS_SIZES:
        return jsonify({"error": f"Unknown aspect ratio: {aspect_ratio}"}), 400

    failure = ensure_client(session)
    if failure:
        return failure

    with state.lock:
        if session.loading or state.story_running():
            return jsonify({"error": "A story is already being generated."}), 409
        if state.panels_running():
            return jsonify({"error": "A panel is still being regenerated."}), 409
        if aspect_ratio:
            session.set_aspect_ratio(aspect_ratio)
        session.set_story(story)
        t = threading.Thread(target=story_worker, args=(session, story), daemon=True)
        t.start()
        state.thread = t
    return jsonify({"started": True}), 202


@app.route("/api/panels/<int:n>/regenerate", methods=["POST"])
def api_regenerate(n: int):
    idx = panel_index(n)
    if idx is None:
        return jsonify({"error": f"No panel {n}"}), 404
    session = state.session

    with state.lock:
        if state.story_running():
            return jsonify({"error": "A story is already being generated."}), 409
        worker = state.panel_threads.get(idx)
        if worker and worker.is_alive():
            return jsonify({"error": f"Panel {n} is already being generated."}), 409
        try:
            session.validate_regenerate(idx)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except SessionBusyError as e:
            return jsonify({"error": str(e)}), 409

        failure = ensure_client(session)
        if failure:
            return failure

        t = threading.Thread(target=panel_worker, args=(session, idx), daemon=True)
        t.start()
        state.panel_threads[idx] = t
    return jsonify({"started": True}), 202


@app.route("/api/panels/<int:n>/story", methods=["PUT"])
def api_panel_story(n: int):
    idx = panel_index(n)
    if idx is None:
        return jsonify({"error": f"No panel {n}"}), 404
    data = request.get_json(force=True)
    state.session.set_panel_story(idx, str(data.get("story", "")))
    return jsonify({"success": True, "can_regenerate": state.session.can_regenerate(idx)})


@app.route("/api/panels/<int:n>/characters", methods=["POST"])
def api_add_characters(n: int):
    """Upload up to two character reference images for a panel."""
    idx = panel_index(n)
    if idx is None:
        return jsonify({"error": f"No panel {n}"}), 404

    files = request.files.getlist("file")
    if not files:
        return jsonify({"error": "No file provided"}), 400

    refs = []
    for file in files:
        if file.filename == '':
            return jsonify({"error": "No file selected"}), 400
        try:
            mime = mime_type_for(file.filename)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        refs.append(CharacterRef(data=file.read(), mime_type=mime, filename=file.filename))

    accepted = state.session.add_characters(idx, refs)
    return jsonify({
        "success": True,
        "accepted": accepted,
        "ignored": len(refs) - accepted,
        "characters": len(state.session.panel(idx).characters),
    })


@app.route("/api/panels/<int:n>/characters/<int:char_index>", methods=["DELETE"])
def api_remove_character(n: int, char_index: int):
    idx = panel_index(n)
    if idx is None:
        return jsonify({"error": f"No panel {n}"}), 404
    try:
        state.session.remove_character(idx, char_index)
    except IndexError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"success": True, "characters": len(state.session.panel(idx).characters)})


@app.route("/api/aspect_ratio", methods=["PUT"])
def api_aspect_ratio():
    data = request.get_json(force=True)
    try:
        state.session.set_aspect_ratio(data.get("aspect_ratio"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True, "aspect_ratio": state.session.aspect_ratio})


@app.route("/api/panels/<int:n>/download")
def api_download(n: int):
    idx = panel_index(n)
    if idx is None:
        return "Not found", 404
    image = state.session.panel(idx).image
    if image is None:
        return "Not found", 404
    return send_file(io.BytesIO(image.to_png_bytes()), mimetype="image/png",
                     as_attachment=True, download_name=panel_filename(idx))


@app.route("/api/stream")
def api_stream() -> Response:
    events = state.events

    def gen() -> Generator[str, None, None]:
        yield "event: ping\n" "data: {}\n\n"
        while True:
            try:
                evt = events.get(timeout=60)
            except queue.Empty:
                yield "event: ping\n" "data: {}\n\n"
                continue
            yield f"data: {json.dumps(evt)}\n\n"
    return Response(gen(), mimetype="text/event-stream")


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5001, debug=True, threaded=True)

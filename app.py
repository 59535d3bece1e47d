"""Cartoonizer — Flask web application."""

from __future__ import annotations

import binascii
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.utils import secure_filename

load_dotenv()

import log_setup
log_setup.configure(os.environ.get("LOG_LEVEL", "INFO"))

import db
import cartoon_core
import outcomes
import watermark

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).parent
UPLOADS_DIR = BASE_DIR / "uploads"
OUTPUTS_DIR = BASE_DIR / "outputs"
UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
OUTPUTS_DIR.mkdir(parents=True, exist_ok=True)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024
app.config["GEMINI_CLIENT"] = cartoon_core.GeminiClient.from_env()
CORS(app)

db.init_db()


def _frontend_url() -> str:
    return os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def _record_outcome(
    run_id: str,
    style: Optional[str],
    outcome: Optional[str],
    failures: List[Dict],
    duration: float,
    recipe: Optional[str] = None,
) -> None:
    # Outcome log errors must never affect the response
    try:
        outcomes.append_outcome_log(run_id, style, outcome, failures, duration, recipe)
    except (OSError, ValueError, KeyError) as exc:
        log.warning("Outcome log write failed: %s", exc)


# ---------------------------------------------------------------------------
# Routes — Static files
# ---------------------------------------------------------------------------

@app.get("/uploads/<path:filename>")
def serve_upload(filename: str):
    return send_from_directory(str(UPLOADS_DIR), filename)


@app.get("/outputs/<path:filename>")
def serve_output(filename: str):
    return send_from_directory(str(OUTPUTS_DIR), filename)


# ---------------------------------------------------------------------------
# Routes — Discovery
# ---------------------------------------------------------------------------

@app.get("/api/styles")
def api_styles():
    client: cartoon_core.GeminiClient = app.config["GEMINI_CLIENT"]
    return jsonify({
        "styles": cartoon_core.STYLES,
        "model": client.model,
        "remote_available": bool(client.api_key),
    })


@app.get("/api/stats")
def api_stats():
    return jsonify(outcomes.get_totals())


# ---------------------------------------------------------------------------
# Routes — Users
# ---------------------------------------------------------------------------

@app.post("/api/users")
def api_create_user():
    body = request.get_json(silent=True) or {}
    name = (body.get("name") or "").strip()
    mobile = (body.get("mobile") or "").strip()
    if not name or not mobile:
        return jsonify({"error": "name and mobile are required"}), 400

    user_id = db.create_user(name, mobile)
    log.info("User created: id=%s", user_id)
    return jsonify({
        "success": True,
        "userId": user_id,
        "message": "User created successfully",
    })


@app.get("/api/users/<int:user_id>")
def api_get_user(user_id: int):
    user = db.get_user(user_id)
    if not user:
        return jsonify({"error": "Not found"}), 404
    return jsonify(user)


@app.get("/api/users/<int:user_id>/images")
def api_user_images(user_id: int):
    return jsonify(db.find_images_by_user(user_id))


# ---------------------------------------------------------------------------
# Routes — Images
# ---------------------------------------------------------------------------

@app.post("/api/images/upload")
def api_upload_image():
    file = request.files.get("image")
    if file is None or not file.filename:
        return jsonify({"error": "File upload failed"}), 400

    user_id = request.form.get("userId")
    ext = Path(secure_filename(file.filename)).suffix.lower()
    filename = f"{uuid.uuid4()}{ext}"
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    file.save(str(UPLOADS_DIR / filename))

    image_path = f"uploads/{filename}"
    image_id = db.create_image(user_id, image_path)
    log.info("Upload stored: id=%s  path=%s", image_id, image_path)
    return jsonify({"success": True, "imageId": image_id, "imagePath": image_path})


@app.post("/api/images/process")
def api_process_image():
    body = request.get_json(silent=True) or {}
    image_data = body.get("imageData")
    user_id = body.get("userId")
    style = body.get("style")

    if not image_data or not user_id or not style:
        return jsonify({"error": "Missing required parameters"}), 400

    filename = f"{uuid.uuid4()}.png"
    run_id = filename[:8]
    try:
        original_path = cartoon_core.save_base64_image(image_data, str(UPLOADS_DIR), filename)
    except (binascii.Error, ValueError):
        return jsonify({"error": "imageData is not valid base64"}), 400

    pipeline = cartoon_core.CartoonPipeline(
        run_id=run_id,
        source_path=original_path,
        style=style,
        client=app.config["GEMINI_CLIENT"],
    )
    try:
        result = pipeline.run()
    except cartoon_core.PipelineFailed as exc:
        log.error("Run failed: id=%s  style=%s  error=%s", run_id, style, exc)
        _record_outcome(run_id, style, None, exc.failures, 0.0)
        return jsonify({"error": "Image processing failed", "details": str(exc)}), 500

    _record_outcome(run_id, style, result.outcome, result.failures, result.duration, result.recipe)

    output_path = OUTPUTS_DIR / filename
    cartoon_core.write_bytes(str(output_path), result.image_bytes)
    try:
        watermark.apply_watermark(str(output_path), str(output_path))
    except (OSError, ValueError) as exc:
        return jsonify({"error": "Watermark failed", "details": str(exc)}), 500

    image_id = db.create_image(
        user_id,
        f"uploads/{filename}",
        processed_image=f"outputs/{filename}",
        style=style,
        outcome=result.outcome,
    )
    qr_code = watermark.qr_code_base64(f"{_frontend_url()}/download/{filename}")

    log.info("Run complete: id=%s  image=%s  outcome=%s", run_id, image_id, result.outcome)
    return jsonify({
        "success": True,
        "processedImage": f"outputs/{filename}",
        "imageId": image_id,
        "qrCode": qr_code,
        "outcome": result.outcome,
    })


@app.get("/api/images/<filename>")
def api_get_image(filename: str):
    if not (OUTPUTS_DIR / filename).is_file():
        return jsonify({"error": "Image not found"}), 404
    return send_from_directory(str(OUTPUTS_DIR), filename)


@app.get("/api/images/download/<filename>")
def api_download_image(filename: str):
    if not (OUTPUTS_DIR / filename).is_file():
        return jsonify({"error": "Image not found"}), 404
    return send_from_directory(
        str(OUTPUTS_DIR),
        filename,
        as_attachment=True,
        download_name=f"cartoonized-{filename}",
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5010))
    print(f"\n  Cartoonizer → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)

# -*- coding: utf-8 -*-
"""
backend/app_server.py

마켓플레이스 백엔드 Flask API 서버입니다.

제공 API:
- GET      /health
- GET      /api/config
- GET,POST /api/offerwall/callback      (오퍼월 전환 포스트백)
- POST     /api/gumroad/publish
- POST     /api/gumroad/credentials
- POST     /api/gumroad/credentials/check
- POST     /api/projects
- GET      /api/projects?user_id=...  (또는 ?status=approved 공개 목록)
- GET      /api/projects/<id>
- DELETE   /api/projects/<id>
- POST     /api/verify
- POST     /api/create-checkout
- OPTIONS  모든 경로 (preflight)

필수 키가 없는 기능(AI 검증, Stripe 결제)은 시작 시 로그를 남기고 503으로 응답합니다.
"""

import hmac
import threading
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from marketplace.ai_verifier import ProjectVerifier
from marketplace.config import Config
from marketplace.credentials import CredentialStore
from marketplace.gumroad_browser import GumroadBrowserClient
from marketplace.ledger import ConversionLedger, funding_status
from marketplace.payment_processor import CheckoutService
from marketplace.pipeline import VerificationPipeline
from marketplace.postback import merge_params, normalize_postback
from marketplace.publisher import (
    PROJECT_NOT_APPROVED,
    PROJECT_NOT_FOUND,
    PUBLISH_IN_PROGRESS,
    STORAGE_UNAVAILABLE,
    PublishOrchestrator,
)
from marketplace.store import MarketplaceStore
from marketplace.utils import (
    AutomationError,
    CheckoutError,
    ConfigError,
    MarketplaceError,
    NotFoundError,
    PreconditionError,
    RetryPolicy,
    StorageError,
    ValidationError,
    VerificationError,
    get_logger,
)

logger = get_logger(__name__)

# 게시 실패 코드별 HTTP 상태 (그 외 자동화/검증 실패는 502)
PUBLISH_STATUS = {
    PROJECT_NOT_FOUND: 404,
    PROJECT_NOT_APPROVED: 400,
    PUBLISH_IN_PROGRESS: 409,
    STORAGE_UNAVAILABLE: 503,
}

# 예외 클래스별 (HTTP 상태, 에러 코드)
ERROR_STATUS = (
    (ValidationError, 400, "invalid_request"),
    (PreconditionError, 400, "precondition_failed"),
    (NotFoundError, 404, "not_found"),
    (StorageError, 503, "storage_unavailable"),
    (ConfigError, 503, "not_configured"),
    (VerificationError, 502, "verification_failed"),
    (CheckoutError, 502, "checkout_failed"),
    (AutomationError, 502, "automation_failed"),
)


# -----------------------------
# 유틸: CORS/OPTIONS
# -----------------------------


def _cors(resp: Response) -> Response:
    """CORS 헤더를 부착합니다."""
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
    return resp


def _error(status: int, error: str, message: str, **extra):
    body = {"success": False, "error": error, "message": message}
    body.update(extra)
    return jsonify(body), status


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _supplied_token(params: dict) -> str:
    """Authorization: Bearer <t>, Authorization: <t>, ?token=<t> 순으로 확인합니다."""
    header = (request.headers.get("Authorization") or "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    if header:
        return header
    return str(params.get("token") or "")


def _postback_response(ok: bool, status: int, text_mode: bool, **payload):
    if text_mode:
        return Response("OK" if ok else "ERROR", status=status, mimetype="text/plain")
    body = {"ok": ok}
    body.update(payload)
    return jsonify(body), status


def _build_optional(name: str, factory):
    try:
        return factory()
    except ConfigError as e:
        logger.warning(f"{name} disabled: {e.message}")
        return None


def create_app(
    config: Optional[Config] = None,
    store: Optional[MarketplaceStore] = None,
    verifier=None,
    checkout=None,
    browser_client=None,
    validator=None,
    policy: Optional[RetryPolicy] = None,
) -> Flask:
    """설정과 컴포넌트를 한 번 구성하여 Flask 앱을 생성합니다."""
    config = config or Config.from_env()
    store = store or MarketplaceStore(config.database_url)
    policy = policy or RetryPolicy(
        max_attempts=config.storage_retry_attempts, delay_seconds=config.storage_retry_delay
    )

    credentials = CredentialStore(store)
    orchestrator = PublishOrchestrator(
        store,
        credentials,
        browser_client or GumroadBrowserClient(config),
        validator=validator,
        policy=policy,
        lease_ttl_seconds=config.publish_lease_ttl_seconds,
    )
    if verifier is None:
        verifier = _build_optional("AI verification (/api/verify)", lambda: ProjectVerifier(config))
    if checkout is None:
        checkout = _build_optional("Stripe checkout (/api/create-checkout)", lambda: CheckoutService(config, store, policy))

    on_unlock = None
    if config.auto_publish_on_funded:

        def on_unlock(project_id: str):
            # 포스트백 응답을 붙잡지 않도록 별도 스레드에서 게시 (리스로 중복 방지)
            logger.info(f"Funding unlocked, publishing in background - project ID: {project_id}")
            threading.Thread(
                target=orchestrator.publish, args=(project_id,), name=f"publish-{project_id}", daemon=True
            ).start()

    ledger = ConversionLedger(store, on_unlock=on_unlock)
    pipeline = VerificationPipeline(store, verifier, orchestrator, policy)

    if not config.offerwall_callback_token:
        logger.warning("OFFERWALL_CALLBACK_TOKEN not set; offerwall callbacks are accepted without authentication")

    app = Flask(__name__)
    app.extensions["marketplace"] = {
        "config": config,
        "store": store,
        "credentials": credentials,
        "orchestrator": orchestrator,
        "ledger": ledger,
        "pipeline": pipeline,
        "checkout": checkout,
    }

    @app.before_request
    def _handle_options():
        """OPTIONS preflight를 공통 처리하여 405를 방지합니다."""
        if request.method == "OPTIONS":
            return Response(status=204)

    @app.after_request
    def _apply_cors(resp):
        return _cors(resp)

    @app.errorhandler(MarketplaceError)
    def _marketplace_error(e: MarketplaceError):
        for error_class, status, code in ERROR_STATUS:
            if isinstance(e, error_class):
                return _error(status, getattr(e, "code", None) or code, e.message, stage=e.stage)
        return _error(500, "internal_error", e.message, stage=e.stage)

    @app.errorhandler(Exception)
    def _unexpected_error(e: Exception):
        if isinstance(e, HTTPException):
            return _error(e.code, e.name.lower().replace(" ", "_"), e.description)
        logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
        return _error(500, "internal_error", "Internal server error")

    # -----------------------------
    # 상태
    # -----------------------------

    @app.get("/health")
    def health():
        """헬스 체크"""
        return jsonify({"ok": True, "service": "marketplace"})

    @app.get("/api/config")
    def integration_config():
        return jsonify(
            {
                "stripe": {
                    "configured": checkout is not None,
                    "mode": checkout.mode() if checkout else config.stripe_mode,
                },
                "ai_verification": {"configured": verifier is not None, "model": config.ai_verify_model},
                "automation": {
                    "mode": "local-browser",
                    "headless": config.gumroad_headless,
                    "base_url": config.gumroad_base_url,
                },
                "offerwall": {"token_required": bool(config.offerwall_callback_token)},
                "auto_publish_on_funded": config.auto_publish_on_funded,
            }
        )

    # -----------------------------
    # 오퍼월 포스트백
    # -----------------------------

    @app.route("/api/offerwall/callback", methods=["GET", "POST"])
    def offerwall_callback():
        body = _json_body() if request.is_json else request.form
        params = merge_params(request.args, body)
        text_mode = params.get("format") == "text"

        expected = config.offerwall_callback_token
        if expected and not hmac.compare_digest(_supplied_token(params).encode(), expected.encode()):
            logger.warning(f"Offerwall callback rejected: bad token from {request.remote_addr}")
            return _postback_response(False, 401, text_mode, error="unauthorized")

        postback = normalize_postback(params)
        if postback.missing_fields:
            logger.warning(f"Offerwall callback missing fields: {postback.missing_fields}")
            return _postback_response(False, 400, text_mode, error="missing_fields", missing=postback.missing_fields)

        try:
            outcome = ledger.record_conversion(
                postback.provider,
                postback.transaction_id,
                postback.user_id,
                project_id=postback.project_id,
                payout=postback.payout,
                raw_params=postback.raw_params,
            )
        except ValidationError as e:
            return _postback_response(False, 400, text_mode, error="invalid_postback", message=e.message)
        except StorageError:
            return _postback_response(False, 500, text_mode, error="storage_error")

        return _postback_response(True, 200, text_mode, duplicated=outcome.duplicate)

    # -----------------------------
    # Gumroad
    # -----------------------------

    @app.post("/api/gumroad/publish")
    def gumroad_publish():
        project_id = str(_json_body().get("project_id") or "").strip()
        if not project_id:
            return _error(
                400,
                "missing_project_id",
                "project_id is required",
                instructions=["Send a JSON body with the project_id to publish"],
            )
        result = orchestrator.publish(project_id)
        status = 200 if result.success else PUBLISH_STATUS.get(result.error, 502)
        return jsonify(result.to_dict()), status

    @app.post("/api/gumroad/credentials")
    def gumroad_credentials():
        body = _json_body()
        credentials.save(
            str(body.get("user_id") or ""), str(body.get("email") or ""), str(body.get("password") or "")
        )
        return jsonify({"success": True, "message": "Gumroad credentials saved"})

    @app.post("/api/gumroad/credentials/check")
    def gumroad_credentials_check():
        user_id = str(_json_body().get("user_id") or "").strip()
        if not user_id:
            return _error(400, "missing_user_id", "user_id is required")
        return jsonify({"has_credentials": credentials.has_credentials(user_id)})

    # -----------------------------
    # 프로젝트
    # -----------------------------

    @app.post("/api/projects")
    def submit_project():
        body = _json_body()
        project = pipeline.submit_project(str(body.get("user_id") or "").strip(), body)
        return jsonify({"success": True, "project": project}), 201

    @app.get("/api/projects")
    def list_projects():
        user_id = (request.args.get("user_id") or "").strip() or None
        status = (request.args.get("status") or "").strip() or None
        return jsonify({"success": True, "projects": pipeline.list_projects(user_id=user_id, status=status)})

    @app.get("/api/projects/<project_id>")
    def get_project(project_id):
        project = pipeline.get_project(project_id)
        funding = funding_status(project).to_dict()
        funding["publish_eligible"] = PublishOrchestrator.is_eligible(project)
        return jsonify({"success": True, "project": project, "funding": funding})

    @app.delete("/api/projects/<project_id>")
    def delete_project(project_id):
        pipeline.delete_project(project_id)
        return jsonify({"success": True, "message": f"Project {project_id} deleted"})

    @app.post("/api/verify")
    def verify_project():
        if verifier is None:
            return _error(503, "ai_verification_disabled", "OPENAI_API_KEY is not configured")
        body = _json_body()
        project_id = str(body.get("project_id") or "").strip()
        if not project_id:
            return _error(400, "missing_project_id", "project_id is required")
        outcome = pipeline.verify(project_id, fields=body)
        result = {"success": True}
        result.update(outcome.to_dict())
        return jsonify(result)

    # -----------------------------
    # 결제
    # -----------------------------

    @app.post("/api/create-checkout")
    def create_checkout():
        if checkout is None:
            return _error(503, "stripe_not_configured", "STRIPE_SECRET_KEY is not configured")
        body = _json_body()
        project_id = str(body.get("project_id") or "").strip()
        if not project_id:
            return _error(400, "missing_project_id", "project_id is required")
        session = checkout.create_session(project_id, title=body.get("title"), price=body.get("price"))
        result = {"success": True}
        result.update(session)
        return jsonify(result)

    return app


# -----------------------------
# 엔트리포인트
# -----------------------------


def main() -> None:
    """서버 실행 (기본 127.0.0.1:5000, SERVER_HOST/SERVER_PORT로 변경 가능)"""
    config = Config.from_env()
    app = create_app(config)
    app.run(host=config.server_host, port=config.server_port, debug=False)


if __name__ == "__main__":
    main()

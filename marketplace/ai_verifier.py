# -*- coding: utf-8 -*-
"""
ai_verifier.py

제출된 프로젝트 메타데이터를 AI로 검토하여 승인/거절과 사유를 반환합니다.
OpenAI 호환 Chat Completions API를 requests로 직접 호출합니다.
"""

import json
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

import requests

from .config import Config
from .utils import ConfigError, VerificationError, get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are an AI assistant reviewing creative project submissions. You cannot access external links or files, but you can evaluate projects based on their metadata and descriptions.

Your job is to verify if the project submission appears to be:
- Complete and well-described (not a draft or placeholder)
- Of reasonable quality based on the description
- Professional and marketable
- Properly categorized
- Meeting any specified deadlines (if deadline is provided)

Evaluation criteria:
- Project title should be specific and descriptive
- Description should be detailed and professional
- Project type should match the description
- Overall impression should be of a completed, quality project
- If a deadline is provided, check if the current date is before or after the deadline

IMPORTANT: Respond ONLY with valid JSON in this exact format, no additional text or explanations:
{ "approved": true/false, "reason": "explanation", "type": "project_type" }"""

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


@dataclass
class VerificationResult:
    """AI 검증 결과."""

    approved: bool
    reason: str
    type: Optional[str] = None
    raw_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"approved": self.approved, "reason": self.reason, "type": self.type}


def build_user_prompt(title, description, project_type, google_drive_link=None, deadline=None, today=None):
    today = today or date.today()
    lines = [
        "Please review this project submission based on the provided metadata:",
        "",
        f"Title: {title}",
        f"Description: {description}",
        f"Project Type: {project_type}",
    ]
    if google_drive_link:
        lines.append(f"Google Drive Link: {google_drive_link}")
    if deadline:
        lines.append(f"Deadline: {deadline}")
    lines.append(f"Current Date: {today.isoformat()}")
    lines += [
        "",
        "Evaluate this project based on:",
        "1. Is the title specific and descriptive?",
        "2. Is the description detailed and professional?",
        "3. Does the project type match the description?",
        "4. Does this appear to be a complete, quality project worth its price?",
    ]
    if deadline:
        lines.append("5. Is the current date before or after the deadline? If after deadline, this may affect approval.")
    lines += ["", "Note: You cannot access the actual files, so base your evaluation on the metadata quality and professionalism."]
    return "\n".join(lines)


def parse_verification(text: str) -> VerificationResult:
    """응답에서 첫 JSON 블록을 추출해 VerificationResult로 변환합니다."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise VerificationError("No JSON found in AI response", stage="AI Verification")
    try:
        data = json.loads(match.group(0))
    except ValueError as e:
        raise VerificationError("Failed to parse AI response", stage="AI Verification", original_exception=e) from e
    if not isinstance(data, dict) or "approved" not in data:
        raise VerificationError("AI response is missing 'approved'", stage="AI Verification")

    approved = data["approved"]
    if isinstance(approved, str):
        approved = approved.strip().lower() == "true"
    return VerificationResult(
        approved=bool(approved),
        reason=str(data.get("reason") or "").strip(),
        type=data.get("type"),
        raw_response=text,
    )


class ProjectVerifier:
    def __init__(self, config: Config, timeout: int = 60):
        if not config.openai_api_key:
            raise ConfigError("OPENAI_API_KEY가 설정되지 않았습니다. AI 검증을 사용할 수 없습니다.", stage="AI Verifier Init")
        self.api_key = config.openai_api_key
        self.api_base = config.ai_api_base.rstrip("/")
        self.model = config.ai_verify_model
        self.timeout = timeout
        logger.info(f"ProjectVerifier 초기화 완료 (model={self.model})")

    def verify(self, title, description, project_type, google_drive_link=None, deadline=None) -> VerificationResult:
        logger.info(f"AI verification started: '{title}' ({project_type})")
        content = self._call_chat_completion(
            SYSTEM_PROMPT,
            build_user_prompt(title, description, project_type, google_drive_link, deadline),
        )
        result = parse_verification(content)
        logger.info(f"AI verification result: approved={result.approved}, reason={result.reason}")
        return result

    def _call_chat_completion(self, system_prompt: str, user_prompt: str) -> str:
        url = f"{self.api_base}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.3,
        }
        try:
            resp = requests.post(url, headers=headers, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise VerificationError(f"AI API 호출 실패: {e}", stage="AI Verification", original_exception=e) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        choice = choices[0] if isinstance(choices, list) and choices else None
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content:
            raise VerificationError("No response content from AI API", stage="AI Verification")
        return content

"""API routes for chat context preparation.

Single Responsibility: Translate HTTP requests into guardrail pipeline runs.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from ..engine.candidates import candidate_source_url, candidate_title
from ..engine.guardrail_meta import GUARDRAIL_META_HEADER, encode_guardrail_meta_header
from ..engine.pipeline import GuardrailPipeline, GuardrailResult
from ..engine.types import GuardrailEngineError
from ..services.chat import get_pipeline
from .schemas import (
    ChatContextRequest,
    ChatContextResponse,
    HistoryWindowSummary,
    IncludedChunk,
    SanitizationChangeOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _to_response(result: GuardrailResult) -> ChatContextResponse:
    return ChatContextResponse(
        preset_id=result.preset_id,
        intent=result.routed.intent.value,
        confidence=result.routed.confidence,
        reason=result.routed.reason,
        language=result.routed.question.language.value,
        context_block=result.context.context_block,
        insufficient=result.context.insufficient,
        highest_score=result.context.highest_score,
        included=[
            IncludedChunk(
                doc_key=item.doc_key,
                title=candidate_title(item.candidate),
                source_url=candidate_source_url(item.candidate),
                score=item.candidate.score,
                token_count=item.token_count,
                clipped=item.clipped,
                text=item.clipped_text,
            )
            for item in result.context.included
        ],
        dropped=result.context.dropped,
        history=HistoryWindowSummary(
            preserved=len(result.history.preserved),
            trimmed=len(result.history.trimmed),
            token_count=result.history.token_count,
            summary_text=result.history.summary_text,
        ),
        sanitization_changes=[
            SanitizationChangeOut(
                field=change.field,
                from_value=change.from_value,
                to_value=change.to_value,
                reason=change.reason.value,
            )
            for change in result.sanitization_changes
        ],
        retrieval_cache_hit=result.retrieval_cache_hit,
        response_cache_hit=result.response_cache_hit,
    )


@router.post("/chat/context", response_model=ChatContextResponse)
async def chat_context_endpoint(
    request: ChatContextRequest,
    response: Response,
    pipeline: GuardrailPipeline = Depends(get_pipeline),
) -> ChatContextResponse:
    """Route the turn, window the history and assemble retrieval context."""
    try:
        result = await pipeline.run(
            [msg.model_dump() for msg in request.messages],
            request.session,
            safe_mode=request.safe_mode,
        )
    except GuardrailEngineError as e:
        logger.error("Guardrail pipeline failed: %s", e, exc_info=True)
        raise HTTPException(status_code=502, detail=f"Upstream provider error: {str(e)}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Unexpected error preparing chat context")
        raise HTTPException(status_code=500, detail=f"Error preparing context: {str(e)}")

    response.headers[GUARDRAIL_META_HEADER] = encode_guardrail_meta_header(result.meta)
    return _to_response(result)

"""Long-lived AI memory.

Context documents are gzipped into Cloud Storage, indexed in Firestore
(``memory_contexts``), cached in Redis and announced on a Pub/Sub topic so
other workers can warm or evict their caches.
"""
import base64
import binascii
import gzip
import hashlib
import json
import logging
import math
import re
import time
from collections import Counter
from typing import Any, Dict, List, Literal, Optional

import redis
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse
from google.cloud import pubsub_v1
from google.cloud import storage as gcs
from pydantic import BaseModel, Field

from . import ai_json, auth, config, genai_client, storage
from .models import UserRole, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

COLLECTION = "memory_contexts"
CONTEXT_TTL_SECONDS = 3600
ANALYSIS_TTL_SECONDS = 1800
INDEX_PREVIEW_CHARS = 10000
CONTEXT_PROMPT_CHARS = 50000
INDEX_KEYWORDS = 30
CONTEXT_TYPES = ("codebase", "documentation", "conversation", "analysis")
ANALYSIS_TYPES = ("code", "architecture", "debug", "general")

SYSTEM_PROMPTS = {
    "code": (
        "You are an expert code analyst with access to a complete codebase. "
        "Provide detailed technical analysis with specific file references and line numbers."
    ),
    "architecture": (
        "You are a senior software architect analyzing system design. "
        "Provide comprehensive architectural insights with diagrams."
    ),
    "debug": (
        "You are a debugging specialist identifying and solving complex issues. "
        "Focus on root causes and provide actionable solutions."
    ),
    "general": (
        "You are a knowledgeable assistant with access to extensive context. "
        "Provide accurate, helpful responses based on available information."
    ),
}

OUTPUT_HINTS = {
    "code": "Include code examples and file references.",
    "debug": "Focus on identifying issues and solutions.",
    "architecture": "Provide architectural diagrams in Mermaid format.",
}

STOPWORDS = {
    "about", "after", "also", "been", "being", "between", "both", "could", "does", "each",
    "from", "have", "here", "into", "just", "more", "most", "only", "other", "over", "same",
    "should", "some", "such", "than", "that", "their", "them", "then", "there", "these",
    "they", "this", "those", "through", "very", "what", "when", "where", "which", "while",
    "will", "with", "would", "your", "true", "false", "null", "none",
}
_WORD = re.compile(r"[a-z][a-z0-9_]{3,}")

_redis: Optional[redis.Redis] = None
_gcs: Optional[gcs.Client] = None
_publisher: Optional[pubsub_v1.PublisherClient] = None


def _redis_client() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(config.REDIS_URL, decode_responses=True, socket_timeout=5)
    return _redis


def _bucket():
    global _gcs
    if _gcs is None:
        _gcs = gcs.Client()
    return _gcs.bucket(config.MEMORY_BUCKET)


def _get_publisher() -> pubsub_v1.PublisherClient:
    global _publisher
    if _publisher is None:
        _publisher = pubsub_v1.PublisherClient()
    return _publisher


# Cache misses and Redis outages look the same to callers.
def cache_get(key: str) -> Optional[Any]:
    try:
        raw = _redis_client().get(key)
    except redis.RedisError as exc:
        logger.warning("Redis get %s failed: %s", key, exc)
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def cache_set(key: str, value: Any, ttl: int) -> bool:
    try:
        _redis_client().setex(key, ttl, json.dumps(value, default=str))
    except redis.RedisError as exc:
        logger.warning("Redis set %s failed: %s", key, exc)
        return False
    return True


def cache_delete(key: str) -> None:
    try:
        _redis_client().delete(key)
    except redis.RedisError as exc:
        logger.warning("Redis delete %s failed: %s", key, exc)


def publish_event(payload: Dict[str, Any]) -> Optional[str]:
    try:
        publisher = _get_publisher()
        topic = publisher.topic_path(config.PROJECT_ID, config.MEMORY_TOPIC)
        future = publisher.publish(topic, json.dumps(payload, default=str).encode("utf-8"))
        return future.result(timeout=10)
    except Exception as exc:
        logger.warning("Publishing %s to %s failed: %s", payload.get("action"), config.MEMORY_TOPIC, exc)
        return None


def compress_content(content: Any) -> bytes:
    return gzip.compress(json.dumps(content, default=str).encode("utf-8"))


def decompress_content(data: bytes) -> Any:
    return json.loads(gzip.decompress(data).decode("utf-8"))


def blob_path(context_type: str, context_id: str) -> str:
    return f"contexts/{context_type}/{context_id}.json"


def tokenize(text: str) -> List[str]:
    return [word for word in _WORD.findall(text.lower()) if word not in STOPWORDS]


def local_index(content: Any) -> Dict[str, Any]:
    """Frequency based keyword index used when the model cannot build one."""
    text = content if isinstance(content, str) else json.dumps(content, default=str)
    counts = Counter(tokenize(text))
    return {
        "keywords": [word for word, _ in counts.most_common(INDEX_KEYWORDS)],
        "entities": [],
        "concepts": [],
        "summary": text[:200],
        "generatedBy": "local",
    }


def build_index(context_type: str, content: Any) -> Dict[str, Any]:
    preview = json.dumps(content, default=str)[:INDEX_PREVIEW_CHARS]
    prompt = f"""Analyze this content and create a comprehensive index for fast retrieval:

Type: {context_type}
Content Preview: {preview}

Generate:
1. Semantic keywords (20-30 terms)
2. Key entities and relationships
3. Technical concepts and patterns
4. Temporal markers
5. Cross-references to related contexts

Output as JSON: {{"keywords": [], "entities": [], "concepts": [], "temporal": [], "references": [], "summary": ""}}"""
    fallback = local_index(content)
    try:
        text = genai_client.generate_text(
            prompt, model=config.RETRIEVAL_MODEL, temperature=0, max_output_tokens=4096, json_output=True,
        )
    except Exception as exc:
        logger.warning("Index generation failed, using keyword index: %s", exc)
        return fallback
    index = ai_json.parse_model_json(text, fallback)
    if not isinstance(index.get("keywords"), list) or not index["keywords"]:
        index["keywords"] = fallback["keywords"]
    index.setdefault("generatedBy", config.RETRIEVAL_MODEL)
    return index


def store_context(context_id: str, context_type: str, content: Any,
                  metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    started = time.monotonic()
    cache_key = f"context:{context_id}"
    if cache_get(cache_key):
        return {"id": context_id, "source": "cache", "processingTime": int((time.monotonic() - started) * 1000)}

    compressed = compress_content(content)
    path = blob_path(context_type, context_id)
    blob = _bucket().blob(path)
    blob.metadata = {
        "type": context_type,
        "compressed": "true",
        "originalSize": str(len(json.dumps(content, default=str))),
        "compressedSize": str(len(compressed)),
    }
    blob.upload_from_string(compressed, content_type="application/json")

    index = build_index(context_type, content)
    storage_url = f"gs://{config.MEMORY_BUCKET}/{path}"
    record = {
        "id": context_id,
        "type": context_type,
        "storageUrl": storage_url,
        "index": index,
        "metadata": {
            **(metadata or {}),
            "createdAt": utcnow(),
            "sizeBytes": len(compressed),
            "version": "2.0",
        },
    }
    storage.set_document(COLLECTION, context_id, record)
    cached = cache_set(cache_key, {"id": context_id, "type": context_type, "index": index}, CONTEXT_TTL_SECONDS)
    publish_event({
        "action": "context_stored",
        "contextId": context_id,
        "type": context_type,
        "timestamp": utcnow().isoformat(),
    })
    return {
        "id": context_id,
        "storageUrl": storage_url,
        "indexGenerated": True,
        "cached": cached,
        "processingTime": int((time.monotonic() - started) * 1000),
    }


def _index_terms(index: Dict[str, Any]) -> set:
    terms = set()
    for key in ("keywords", "entities", "concepts"):
        for item in index.get(key) or []:
            terms.update(tokenize(item if isinstance(item, str) else json.dumps(item, default=str)))
    return terms


def retrieve_contexts(query: str, limit: int = 5) -> List[Dict[str, Any]]:
    """Rank stored contexts by keyword overlap with ``query``."""
    wanted = set(tokenize(query))
    if not wanted:
        return []
    ranked = []
    for doc in storage.query_documents(COLLECTION, limit=500):
        overlap = wanted & _index_terms(doc.get("index") or {})
        if overlap:
            ranked.append({
                "id": doc["id"],
                "type": doc.get("type"),
                "score": round(len(overlap) / len(wanted), 3),
                "matched": sorted(overlap),
                "summary": (doc.get("index") or {}).get("summary", ""),
            })
    ranked.sort(key=lambda item: item["score"], reverse=True)
    return ranked[:limit]


def _load_context(context_id: str, with_content: bool) -> Optional[Dict[str, Any]]:
    if not with_content:
        cached = cache_get(f"context:{context_id}")
        if cached:
            return cached
    doc = storage.get_document(COLLECTION, context_id)
    if not doc:
        return None
    if with_content:
        try:
            doc["fullContent"] = decompress_content(
                _bucket().blob(blob_path(doc["type"], context_id)).download_as_bytes()
            )
        except Exception as exc:
            logger.warning("Could not load content for context %s: %s", context_id, exc)
    return doc


def _context_prompt(contexts: List[Dict[str, Any]]) -> str:
    blocks = []
    for number, ctx in enumerate(contexts, start=1):
        lines = [
            f"=== Context {number}: {ctx.get('id')} ({ctx.get('type')}) ===",
            f"Index: {json.dumps(ctx.get('index'), default=str)[:1000]}",
        ]
        if ctx.get("fullContent") is not None:
            lines.append(f"Full Content: {json.dumps(ctx['fullContent'], default=str)[:CONTEXT_PROMPT_CHARS]}")
        lines.append(f"Metadata: {json.dumps(ctx.get('metadata') or {}, default=str)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def analyze_with_context(question: str, context_ids: List[str], analysis_type: str = "general",
                         options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    options = options or {}
    started = time.monotonic()
    max_contexts = int(options.get("maxContexts") or 10)
    with_content = analysis_type != "general"

    contexts = [ctx for ctx in (_load_context(cid, with_content) for cid in context_ids[:max_contexts]) if ctx]
    if options.get("includeRelated"):
        known = {ctx.get("id") for ctx in contexts}
        for related in retrieve_contexts(question, limit=5):
            if related["id"] in known:
                continue
            doc = storage.get_document(COLLECTION, related["id"])
            if doc:
                contexts.append(doc)

    model = config.ANALYSIS_MODEL if analysis_type in ("code", "architecture") else config.RETRIEVAL_MODEL
    prompt = "\n\n".join([
        SYSTEM_PROMPTS.get(analysis_type, SYSTEM_PROMPTS["general"]),
        f"=== AVAILABLE CONTEXT ({len(contexts)} sources) ===\n{_context_prompt(contexts)}",
        f"=== USER QUERY ===\n{question}",
        f"=== OUTPUT REQUIREMENTS ===\nFormat: {options.get('outputFormat', 'detailed')}\n"
        + OUTPUT_HINTS.get(analysis_type, ""),
    ])
    answer = genai_client.generate_text(
        prompt,
        model=model,
        temperature=0.1 if model == config.ANALYSIS_MODEL else 0,
        max_output_tokens=8192,
    )
    response = {"content": answer, "type": analysis_type, "timestamp": utcnow().isoformat()}
    cache_set(f"analysis:{hashlib.sha256(question.encode('utf-8')).hexdigest()[:20]}", response, ANALYSIS_TTL_SECONDS)
    return {
        "response": response,
        "contextsUsed": len(contexts),
        "modelUsed": model,
        "processingTime": int((time.monotonic() - started) * 1000),
        "tokenCount": estimate_tokens(prompt + answer),
    }


def delete_context(context_id: str) -> bool:
    doc = storage.get_document(COLLECTION, context_id)
    if not doc:
        return False
    try:
        _bucket().blob(blob_path(doc["type"], context_id)).delete()
    except Exception as exc:
        logger.warning("Could not delete blob for context %s: %s", context_id, exc)
    storage.delete_document(COLLECTION, context_id)
    cache_delete(f"context:{context_id}")
    publish_event({"action": "context_deleted", "contextId": context_id, "timestamp": utcnow().isoformat()})
    return True


def process_memory_update(message: Dict[str, Any]) -> Dict[str, Any]:
    """Handle a Pub/Sub push message published by this module."""
    try:
        data = json.loads(base64.b64decode(message.get("data") or "").decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Malformed memory update: {exc}") from exc

    action = data.get("action")
    context_id = data.get("contextId")
    if action == "context_stored" and context_id:
        doc = storage.get_document(COLLECTION, context_id)
        if doc:
            cache_set(
                f"context:{context_id}",
                {"id": context_id, "type": doc.get("type"), "index": doc.get("index")},
                CONTEXT_TTL_SECONDS,
            )
        return {"action": action, "contextId": context_id, "warmed": bool(doc)}
    if action == "context_deleted" and context_id:
        cache_delete(f"context:{context_id}")
        return {"action": action, "contextId": context_id, "evicted": True}
    logger.info("Ignoring memory update action %s", action)
    return {"action": action, "ignored": True}


class MemoryRequest(BaseModel):
    action: Literal["store", "retrieve", "analyze", "delete"]
    params: Dict[str, Any] = Field(default_factory=dict)


def _handle(action: str, params: Dict[str, Any]) -> Any:
    if action == "store":
        context_id = params.get("id")
        if not context_id or "data" not in params:
            raise HTTPException(status_code=400, detail="id and data are required")
        metadata = params.get("metadata") or {}
        context_type = params.get("type") or metadata.get("type") or "conversation"
        if context_type not in CONTEXT_TYPES:
            raise HTTPException(status_code=400, detail=f"type must be one of {', '.join(CONTEXT_TYPES)}")
        return store_context(context_id, context_type, params["data"], metadata)
    if action == "retrieve":
        if not params.get("query"):
            raise HTTPException(status_code=400, detail="query is required")
        return retrieve_contexts(params["query"], int(params.get("limit") or 5))
    if action == "analyze":
        analysis_type = params.get("analysisType") or "general"
        if not params.get("query") or analysis_type not in ANALYSIS_TYPES:
            raise HTTPException(status_code=400, detail="query and a valid analysisType are required")
        return analyze_with_context(
            params["query"], list(params.get("contexts") or []), analysis_type, params.get("options"),
        )
    if not params.get("id"):
        raise HTTPException(status_code=400, detail="id is required")
    if not delete_context(params["id"]):
        raise HTTPException(status_code=404, detail="Context not found")
    return {"id": params["id"], "deleted": True}


@router.post(f"{config.API_PREFIX}/memory")
def memory_request(request: MemoryRequest, user=Depends(auth.require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN))):
    try:
        return {"success": True, "result": _handle(request.action, request.params)}
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("Memory %s failed: %s", request.action, exc, exc_info=True)
        return JSONResponse({"success": False, "error": "Memory operation failed"}, status_code=500)


@router.post(f"{config.API_PREFIX}/memory/pubsub")
def memory_pubsub(envelope: Dict[str, Any] = Body(...)):
    message = envelope.get("message")
    if not isinstance(message, dict):
        raise HTTPException(status_code=400, detail="Pub/Sub message missing")
    try:
        return process_memory_update(message)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

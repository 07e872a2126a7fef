"""Qdrant vector store adapter."""

import logging
import uuid
from typing import Any, Dict, List, Optional

from qdrant_client import QdrantClient
from qdrant_client.models import (
    DatetimeRange,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
)

from contextrag.providers.base import record_provider_call

logger = logging.getLogger(__name__)


def point_id_for(chunk_id: str) -> str:
    """Qdrant accepts UUIDs or integers; chunk ids map to a stable UUIDv5."""
    try:
        return str(uuid.UUID(chunk_id))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


def build_filter(filters: Dict[str, Any]) -> Optional[Filter]:
    must = []
    if filters.get("document_ids"):
        must.append(
            FieldCondition(key="document_id", match=MatchAny(any=list(filters["document_ids"])))
        )
    for key in ("topic_id", "user_id", "geography"):
        if filters.get(key) is not None:
            must.append(FieldCondition(key=key, match=MatchValue(value=filters[key])))
    if filters.get("time_range_start") or filters.get("time_range_end"):
        must.append(
            FieldCondition(
                key="timestamp",
                range=DatetimeRange(
                    gte=filters.get("time_range_start"),
                    lte=filters.get("time_range_end"),
                ),
            )
        )
    return Filter(must=must) if must else None


class QdrantVectorStore:
    """
    VectorStore over one Qdrant collection with an unnamed dense vector.

    Payload layout: ``chunk_id``, ``text``, ``document_id`` plus any filter keys.
    """

    def __init__(self, client: QdrantClient, collection_name: str = "chunks"):
        self.client = client
        self.collection = collection_name

    def search(
        self, vector: List[float], filters: Dict[str, Any], top_k: int
    ) -> List[Dict[str, Any]]:
        with record_provider_call("qdrant", "search"):
            result = self.client.query_points(
                collection_name=self.collection,
                query=list(vector),
                limit=top_k,
                query_filter=build_filter(filters),
                with_payload=True,
                with_vectors=False,
            )
        hits = []
        for point in result.points:
            payload = dict(point.payload or {})
            hits.append(
                {
                    "id": payload.get("chunk_id") or str(point.id),
                    "score": float(point.score),
                    "metadata": payload,
                }
            )
        return hits

    def upsert(self, points: List[Dict[str, Any]]) -> None:
        structs = [
            PointStruct(
                id=point_id_for(point["id"]),
                vector=list(point["vector"]),
                payload={**point.get("metadata", {}), "chunk_id": point["id"]},
            )
            for point in points
        ]
        with record_provider_call("qdrant", "upsert"):
            self.client.upsert(collection_name=self.collection, points=structs, wait=True)
        logger.info(
            "qdrant_upsert", extra={"collection": self.collection, "count": len(structs)}
        )

    def delete(self, ids: List[str]) -> None:
        with record_provider_call("qdrant", "delete"):
            self.client.delete(
                collection_name=self.collection,
                points_selector=PointIdsList(points=[point_id_for(i) for i in ids]),
            )

"""Service utilities exposed by the ``tilefetch.services`` package."""

from .blobs import BlobStore, DisplayHandle
from .chunking import MAX_DIM, ChunkPlan, plan_request
from .credentials import AuthState, Credential, CredentialKind, UserSession, select_credential
from .geometry import TILE_SIZE, BoundingBox, TileCoordinate, tile_bounds
from .imagery import ImageResult, ImageryClient, RequestSpec
from .layers import ApiType, LayerCatalog, LayerDescriptor, select_api
from .orchestrator import FetchOutcome, FetchStatus, RetryPolicy, TileFetchOrchestrator

__all__ = [
    "ApiType",
    "AuthState",
    "BlobStore",
    "BoundingBox",
    "ChunkPlan",
    "Credential",
    "CredentialKind",
    "DisplayHandle",
    "FetchOutcome",
    "FetchStatus",
    "ImageResult",
    "ImageryClient",
    "LayerCatalog",
    "LayerDescriptor",
    "MAX_DIM",
    "RequestSpec",
    "RetryPolicy",
    "TILE_SIZE",
    "TileCoordinate",
    "TileFetchOrchestrator",
    "UserSession",
    "plan_request",
    "select_api",
    "select_credential",
    "tile_bounds",
]

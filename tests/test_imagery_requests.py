import asyncio
import io

import httpx
import pytest
from PIL import Image

import tilefetch.services.imagery as imagery
from tilefetch.services.credentials import NO_CREDENTIAL, Credential, CredentialKind
from tilefetch.services.errors import AuthorizationError, NetworkFailure
from tilefetch.services.geometry import BoundingBox, TileCoordinate
from tilefetch.services.imagery import ImageryClient, RequestSpec
from tilefetch.services.layers import ApiType, LayerDescriptor

LAYER = LayerDescriptor(
    layer_id="TRUE-COLOR",
    dataset="sentinel-2-l2a",
    capabilities=frozenset(ApiType),
    evalscript="//VERSION=3\nfunction setup() {}",
    instance_id="instance-123",
    time_from="2024-05-01",
    time_to="2024-05-31",
    mosaicking_order="leastCC",
)
USER_CREDENTIAL = Credential(kind=CredentialKind.USER, token="user-token")


def _png_bytes(width: int = 16, height: int = 16) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(120, 200, 150)).save(buffer, format="PNG")
    return buffer.getvalue()


def _install_mock_client(monkeypatch, responder):
    calls: list[dict] = []

    class MockAsyncClient:
        def __init__(self, *args, **kwargs):
            self.closed = False

        async def get(self, url: str, params=None, headers=None):
            call = {"method": "GET", "url": url, "params": params or {}, "headers": headers or {}}
            calls.append(call)
            return responder(call)

        async def post(self, url: str, json=None, headers=None):
            call = {"method": "POST", "url": url, "json": json, "headers": headers or {}}
            calls.append(call)
            return responder(call)

        async def aclose(self):
            self.closed = True

    monkeypatch.setattr(httpx, "AsyncClient", MockAsyncClient)
    return calls


def _image_response(call, content: bytes | None = None, content_type: str = "image/png"):
    return httpx.Response(
        200,
        content=_png_bytes() if content is None else content,
        headers={"Content-Type": content_type},
        request=httpx.Request(call["method"], call["url"]),
    )


def _fetch(spec: RequestSpec, **client_kwargs):
    async def run():
        async with ImageryClient(**client_kwargs) as client:
            return await client.fetch(spec)

    return asyncio.run(run())


def test_processing_request_posts_payload_with_bearer_token(monkeypatch):
    calls = _install_mock_client(monkeypatch, _image_response)
    usage: list[tuple] = []
    spec = RequestSpec(
        api_type=ApiType.PROCESSING,
        layer=LAYER,
        bbox=BoundingBox(west=0.0, south=6701998.66, east=9783.94, north=6711782.6),
        width=512,
        height=512,
        credential=USER_CREDENTIAL,
        evalscript=LAYER.evalscript,
    )

    result = _fetch(
        spec,
        base_url="https://processing.example.test/",
        usage_recorder=lambda api_type, increment: usage.append((api_type, increment)),
    )

    assert (result.width, result.height) == (16, 16)
    assert result.content_type == "image/png"
    assert usage == [("processing", 1)]

    (call,) = calls
    assert call["url"] == "https://processing.example.test/api/v1/process"
    assert call["headers"]["Authorization"] == "Bearer user-token"
    payload = call["json"]
    assert payload["input"]["bounds"]["bbox"] == [0.0, 6701998.66, 9783.94, 6711782.6]
    assert payload["input"]["bounds"]["properties"]["crs"].endswith("/EPSG/0/3857")
    assert payload["input"]["data"] == [
        {
            "type": "sentinel-2-l2a",
            "dataFilter": {
                "timeRange": {"from": "2024-05-01", "to": "2024-05-31"},
                "mosaickingOrder": "leastCC",
            },
        }
    ]
    assert payload["output"]["width"] == 512
    assert payload["output"]["responses"][0]["format"]["type"] == "image/png"
    assert payload["evalscript"] == LAYER.evalscript


def test_legacy_image_request_uses_lat_lon_axis_order_for_wgs84(monkeypatch):
    calls = _install_mock_client(monkeypatch, _image_response)
    spec = RequestSpec(
        api_type=ApiType.LEGACY_IMAGE,
        layer=LAYER,
        bbox=BoundingBox(west=9.0, south=45.0, east=10.0, north=46.0, crs="EPSG:4326"),
        width=800,
        height=600,
        credential=NO_CREDENTIAL,
    )

    _fetch(spec, base_url="https://processing.example.test", usage_recorder=None)

    (call,) = calls
    assert call["url"] == "https://processing.example.test/ogc/wms/instance-123"
    assert "Authorization" not in call["headers"]
    params = call["params"]
    assert params["REQUEST"] == "GetMap"
    assert params["VERSION"] == "1.3.0"
    assert params["BBOX"] == "45.000000,9.000000,46.000000,10.000000"
    assert params["CRS"] == "EPSG:4326"
    assert (params["WIDTH"], params["HEIGHT"]) == (800, 600)
    assert params["TIME"] == "2024-05-01/2024-05-31"
    assert params["LAYERS"] == "TRUE-COLOR"


def test_pre_tiled_request_addresses_the_tile_grid(monkeypatch):
    calls = _install_mock_client(monkeypatch, _image_response)
    spec = RequestSpec(
        api_type=ApiType.PRE_TILED,
        layer=LAYER,
        bbox=BoundingBox(west=0.0, south=0.0, east=1.0, north=1.0),
        width=512,
        height=512,
        credential=USER_CREDENTIAL,
        tile=TileCoordinate(col=2048, row=1362, zoom=12),
    )

    _fetch(spec, base_url="https://processing.example.test", usage_recorder=None)

    (call,) = calls
    assert call["url"] == "https://processing.example.test/ogc/wmts/instance-123"
    params = call["params"]
    assert params["REQUEST"] == "GetTile"
    assert params["TILEMATRIXSET"] == "PopularWebMercator512"
    assert (params["TILEMATRIX"], params["TILECOL"], params["TILEROW"]) == (12, 2048, 1362)


def _processing_spec(credential=USER_CREDENTIAL) -> RequestSpec:
    return RequestSpec(
        api_type=ApiType.PROCESSING,
        layer=LAYER,
        bbox=BoundingBox(west=0.0, south=0.0, east=1.0, north=1.0),
        width=64,
        height=64,
        credential=credential,
        evalscript=LAYER.evalscript,
    )


@pytest.mark.parametrize("status_code", [401, 403])
def test_rejected_credentials_raise_authorization_error(monkeypatch, status_code):
    def responder(call):
        return httpx.Response(
            status_code,
            json={"error": {"message": "Token expired"}},
            request=httpx.Request(call["method"], call["url"]),
        )

    _install_mock_client(monkeypatch, responder)

    with pytest.raises(AuthorizationError) as exc:
        _fetch(_processing_spec(), usage_recorder=None)

    assert exc.value.status_code == status_code


def test_server_errors_raise_network_failure(monkeypatch):
    def responder(call):
        return httpx.Response(
            500, text="x" * 500, request=httpx.Request(call["method"], call["url"])
        )

    _install_mock_client(monkeypatch, responder)

    with pytest.raises(NetworkFailure) as exc:
        _fetch(_processing_spec(), usage_recorder=None)

    assert exc.value.status_code == 500
    assert str(exc.value).endswith("...")


def test_non_image_payloads_raise_network_failure(monkeypatch):
    _install_mock_client(
        monkeypatch,
        lambda call: _image_response(call, content=b"<ServiceException/>", content_type="text/xml"),
    )

    with pytest.raises(NetworkFailure) as exc:
        _fetch(_processing_spec(), usage_recorder=None)

    assert "text/xml" in str(exc.value)


def test_undecodable_images_raise_network_failure(monkeypatch):
    _install_mock_client(monkeypatch, lambda call: _image_response(call, content=b"not a png"))
    usage: list = []

    with pytest.raises(NetworkFailure):
        _fetch(_processing_spec(), usage_recorder=lambda *args, **kwargs: usage.append(args))

    assert usage == []


def test_transport_errors_raise_network_failure(monkeypatch):
    def responder(call):
        raise httpx.ConnectError("connection refused", request=httpx.Request("POST", call["url"]))

    _install_mock_client(monkeypatch, responder)

    with pytest.raises(NetworkFailure) as exc:
        _fetch(_processing_spec(), usage_recorder=None)

    assert "connection refused" in str(exc.value)


def test_fetch_requires_an_open_client():
    client = ImageryClient(usage_recorder=None)

    with pytest.raises(RuntimeError):
        asyncio.run(client.fetch(_processing_spec()))


def test_environment_configuration(monkeypatch):
    monkeypatch.setenv("TILEFETCH_BASE_URL", " https://eu.example.test/ ")
    monkeypatch.setenv("TILEFETCH_REQUEST_TIMEOUT", "not-a-number")
    monkeypatch.setenv("TILEFETCH_MAX_CONCURRENT_REQUESTS", "0")

    client = ImageryClient(usage_recorder=None)

    assert client.base_url == "https://eu.example.test"
    assert imagery._request_timeout() == httpx.Timeout(imagery.DEFAULT_REQUEST_TIMEOUT)
    assert imagery._max_concurrent_requests() == 1

    monkeypatch.setenv("TILEFETCH_REQUEST_TIMEOUT", "15")
    assert imagery._request_timeout() == httpx.Timeout(15.0)

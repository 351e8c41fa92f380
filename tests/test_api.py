from pathlib import Path

from fastapi.testclient import TestClient

from fiscal_intake.api.server import create_app
from fiscal_intake.config import Settings
from fiscal_intake.core.pipeline import Processor
from fiscal_intake.core.store import InMemoryStore


EXAMPLES = Path(__file__).resolve().parents[1] / "example_docs"


def build_client(tmp_path) -> TestClient:
    settings = Settings.default(tmp_path)
    store = InMemoryStore()
    store.seed(
        "products",
        [{"id": "p-gol", "company_id": "default", "name": "Parabrisa Gol", "barcode": "7891234567895", "quantity": 0}],
    )
    return TestClient(create_app(settings, Processor(settings, store=store)))


def upload(name: str):
    return {"file": (name, (EXAMPLES / name).read_bytes(), "application/xml")}


def test_health(tmp_path):
    response = build_client(tmp_path).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_validate_xml(tmp_path):
    response = build_client(tmp_path).post("/xml/validate", files=upload("nfe_compra.xml"))

    assert response.status_code == 200
    body = response.json()
    assert body["document_kind"] == "nfe"
    assert body["validation"]["is_valid"] is True
    assert body["validation"]["summary"]["total_corrections"] >= 1


def test_malformed_xml_is_bad_request(tmp_path):
    files = {"file": ("ruim.xml", b"<NFe><infNFe>", "application/xml")}
    response = build_client(tmp_path).post("/xml/validate", files=files)

    assert response.status_code == 400


def test_import_edit_and_post_draft(tmp_path):
    client = build_client(tmp_path)
    imported = client.post("/xml/import", files=upload("nfe_compra.xml"))
    assert imported.status_code == 200
    draft = imported.json()
    draft_id = draft["draft_id"]
    assert draft["status"] == "Rascunho"
    assert draft["pending"] == 2

    blocked = client.patch(f"/drafts/{draft_id}/header", json={"field": "number", "value": "1"})
    assert blocked.status_code == 409

    edited = client.patch(f"/drafts/{draft_id}/header", json={"field": "freight", "value": 30})
    assert edited.json()["totals"]["freight"] == 30
    assert edited.json()["status"] == "Em Digitação"

    refused = client.post(f"/drafts/{draft_id}/post", json={})
    assert refused.status_code == 422
    assert refused.json()["errors"]

    client.post(f"/drafts/{draft_id}/items/0/link", json={"product_id": "p-gol"})
    client.post(f"/drafts/{draft_id}/items/1/ignore")
    posted = client.post(f"/drafts/{draft_id}/post", json={"user_id": "u-1"})
    assert posted.status_code == 200
    note_id = posted.json()["note_id"]

    assert client.get(f"/notes/{note_id}/can-delete").json()["can_delete"] is True
    assert client.delete(f"/notes/{note_id}").json() == {"status": "deleted"}


def test_reimport_is_unprocessable(tmp_path):
    client = build_client(tmp_path)
    draft_id = client.post("/xml/import", files=upload("nfe_compra.xml")).json()["draft_id"]
    client.post(f"/drafts/{draft_id}/items/0/link", json={"product_id": "p-gol"})
    client.post(f"/drafts/{draft_id}/items/1/ignore")
    client.post(f"/drafts/{draft_id}/post", json={})

    again = client.post("/xml/import", files=upload("nfe_compra.xml"))
    assert again.status_code == 422
    assert again.json()["validation"]["is_valid"] is False


def test_item_suggestions_and_unknown_item(tmp_path):
    client = build_client(tmp_path)
    draft_id = client.post("/xml/import", files=upload("nfe_compra.xml")).json()["draft_id"]

    suggestions = client.get(f"/drafts/{draft_id}/items/0/suggestions")
    assert suggestions.status_code == 200
    assert suggestions.json()[0]["product"]["id"] == "p-gol"

    assert client.get(f"/drafts/{draft_id}/items/9/suggestions").status_code == 404


def test_item_actions_on_unknown_item_are_not_found(tmp_path):
    client = build_client(tmp_path)
    draft_id = client.post("/xml/import", files=upload("nfe_compra.xml")).json()["draft_id"]

    assert client.post(f"/drafts/{draft_id}/items/9/link", json={"product_id": "p-gol"}).status_code == 404
    assert client.post(f"/drafts/{draft_id}/items/9/create-product", json={}).status_code == 404
    assert client.post(f"/drafts/{draft_id}/items/9/ignore").status_code == 404
    assert client.post(f"/drafts/{draft_id}/items/-1/ignore").status_code == 404


def test_item_patch_cannot_unlock_or_link(tmp_path):
    client = build_client(tmp_path)
    draft_id = client.post("/xml/import", files=upload("nfe_compra.xml")).json()["draft_id"]

    unlocked = client.patch(f"/drafts/{draft_id}/items/0", json={"changes": {"origin": "user_entered"}})
    assert unlocked.status_code == 409
    linked = client.patch(
        f"/drafts/{draft_id}/items/0", json={"changes": {"link_status": "linked", "product_id": "p-gol"}}
    )
    assert linked.status_code == 409

    draft = client.get(f"/drafts/{draft_id}").json()
    assert draft["items"][0]["origin"] == "fiscal_imported"
    assert draft["pending"] == 2


def test_ofx_import_save_and_export(tmp_path):
    client = build_client(tmp_path)
    files = {"file": ("extrato.ofx", (EXAMPLES / "extrato.ofx").read_bytes(), "application/x-ofx")}
    report = client.post("/ofx/import", files=files).json()

    assert report["processed_count"] == 6
    assert report["duplicates_count"] == 1

    saved = client.post(f"/ofx/{report['report_id']}/save", json={"account_id": "conta-1"})
    assert saved.json()["count"] == 5

    exported = client.get(f"/ofx/{report['report_id']}/export", params={"account_id": "conta-1"})
    assert exported.status_code == 200
    assert exported.text.startswith("fitid")

    assert client.post("/ofx/99/save", json={"account_id": "conta-1"}).status_code == 404

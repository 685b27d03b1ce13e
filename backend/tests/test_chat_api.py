import asyncio

import httpx
import pytest
from conftest import FakeWebSocket

from app.main import app, install_chat_state

BASE = "/v1/chat"


@pytest.fixture
def registry():
    # ASGITransport는 startup 이벤트를 실행하지 않으므로 직접 연결
    return install_chat_state(app)


def call(*requests):
    """
    (method, url, kwargs) 요청들을 같은 이벤트 루프에서 순서대로 보내고 응답 목록을 반환합니다.
    """

    async def run():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            return [await client.request(method, url, **kwargs) for method, url, kwargs in requests]

    return asyncio.run(run())


def test_status_reports_connections(registry, users):
    registry.authenticate(registry.connect(FakeWebSocket()), users[0], [])
    registry.connect(FakeWebSocket())

    (response,) = call(("GET", f"{BASE}/status", {}))

    assert response.status_code == 200
    assert response.json() == {"status": "online", "active_connections": 2, "authenticated_users": 1}


def test_conversation_scenario(registry, users):
    """대화방 생성 -> 메시지 전송 -> 목록(안 읽음 1) -> 기록 조회(읽음 처리) -> 목록(안 읽음 0)"""
    alice, bob, _ = users

    (created, again) = call(
        ("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}),
        ("POST", f"{BASE}/conversa", {"json": {"usuario1_id": bob, "usuario2_id": alice}}),
    )
    assert created.status_code == 200
    conversation_id = created.json()["conversa_id"]
    assert again.json()["conversa_id"] == conversation_id

    sent, bob_list, history, bob_list_after = call(
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": "hi"}}),
        ("GET", f"{BASE}/conversas/{bob}", {}),
        ("GET", f"{BASE}/mensagens/{conversation_id}", {"params": {"usuarioId": bob}}),
        ("GET", f"{BASE}/conversas/{bob}", {}),
    )

    assert sent.status_code == 200
    message = sent.json()
    assert message["conteudo"] == "hi"
    assert message["status"] == "sent"
    assert message["usuario_nome"] == "Alice"

    (summary,) = bob_list.json()
    assert summary["id"] == conversation_id
    assert summary["outro_usuario"]["nome"] == "Alice"
    assert summary["ultima_mensagem"]["conteudo"] == "hi"
    assert summary["nao_lidas"] == 1

    assert [(m["id"], m["status"]) for m in history.json()] == [(message["id"], "read")]
    assert bob_list_after.json()[0]["nao_lidas"] == 0


def test_send_broadcasts_both_event_names(registry, users):
    alice, bob, _ = users
    socket = FakeWebSocket()

    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))
    conversation_id = created.json()["conversa_id"]
    registry.authenticate(registry.connect(socket), bob, [conversation_id])

    (sent,) = call(
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": "yo"}})
    )

    assert socket.events("new_message") == [sent.json()]
    assert socket.events("nova_mensagem") == [sent.json()]


def test_history_marks_read_and_notifies_room(registry, users):
    alice, bob, _ = users
    socket = FakeWebSocket()

    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))
    conversation_id = created.json()["conversa_id"]
    registry.authenticate(registry.connect(socket), alice, [conversation_id])

    call(
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": "a"}}),
        ("GET", f"{BASE}/mensagens/{conversation_id}", {"params": {"usuarioId": bob}}),
        # 두 번째 조회는 읽음 처리할 메시지가 없으므로 알림도 없음
        ("GET", f"{BASE}/mensagens/{conversation_id}", {"params": {"usuarioId": bob}}),
    )

    assert socket.events("messages_read") == [{"conversationId": conversation_id, "userId": bob}]


def test_conversation_ready_goes_to_both_users(registry, users):
    alice, bob, carol = users
    alice_socket, bob_socket, carol_socket = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
    registry.authenticate(registry.connect(alice_socket), alice, [])
    registry.authenticate(registry.connect(bob_socket), bob, [])
    registry.authenticate(registry.connect(carol_socket), carol, [])

    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))

    expected = [{"conversationId": created.json()["conversa_id"]}]
    assert alice_socket.events("conversation_ready") == expected
    assert bob_socket.events("conversation_ready") == expected
    assert carol_socket.sent == []


def test_direct_conversation_errors(registry, users):
    alice = users[0]

    self_chat, unknown, bad_body = call(
        ("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": alice}}),
        ("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": 999}}),
        ("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice}}),
    )

    assert self_chat.status_code == 400
    assert unknown.status_code == 404
    assert bad_body.status_code == 400


def test_send_rejects_empty_unknown_fields_and_outsiders(registry, users):
    alice, bob, carol = users
    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))
    conversation_id = created.json()["conversa_id"]

    empty, extra, outsider = call(
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": " "}}),
        (
            "POST",
            f"{BASE}/enviar",
            {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": "x", "arquivo": "a.png"}},
        ),
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": carol, "conteudo": "x"}}),
    )

    assert empty.status_code == 400
    assert extra.status_code == 400
    assert outsider.status_code == 403
    assert outsider.json()["detail"]


def test_history_errors(registry, users):
    alice, bob, carol = users
    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))
    conversation_id = created.json()["conversa_id"]

    outsider, missing = call(
        ("GET", f"{BASE}/mensagens/{conversation_id}", {"params": {"usuarioId": carol}}),
        ("GET", f"{BASE}/mensagens/999", {"params": {"usuarioId": alice}}),
    )

    assert outsider.status_code == 403
    assert missing.status_code == 404


def test_unread_count_route(registry, users):
    alice, bob, carol = users
    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))
    conversation_id = created.json()["conversa_id"]

    _, _, bob_count, alice_count, carol_count = call(
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": "1"}}),
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": alice, "conteudo": "2"}}),
        ("GET", f"{BASE}/conversas/{bob}/{conversation_id}/nao-lidas", {}),
        ("GET", f"{BASE}/conversas/{alice}/{conversation_id}/nao-lidas", {}),
        ("GET", f"{BASE}/conversas/{carol}/{conversation_id}/nao-lidas", {}),
    )

    assert bob_count.json() == {"conversa_id": conversation_id, "nao_lidas": 2}
    assert alice_count.json()["nao_lidas"] == 0
    assert carol_count.status_code == 403


def test_search_users_excludes_requester(registry, users):
    alice, bob, carol = users

    short, by_domain, by_bio = call(
        ("GET", f"{BASE}/usuarios/buscar", {"params": {"usuarioId": alice, "termo": "a"}}),
        ("GET", f"{BASE}/usuarios/buscar", {"params": {"usuarioId": alice, "termo": "example"}}),
        ("GET", f"{BASE}/usuarios/buscar", {"params": {"usuarioId": alice, "termo": "CAROL B"}}),
    )

    assert short.status_code == 400
    assert [u["id"] for u in by_domain.json()] == [bob, carol]
    assert [u["nome"] for u in by_bio.json()] == ["Carol"]


def test_create_direct_and_group_conversations(registry, users):
    alice, bob, carol = users
    bob_socket = FakeWebSocket()
    registry.authenticate(registry.connect(bob_socket), bob, [])

    direct, legacy_direct, group, missing_other = call(
        ("POST", f"{BASE}/conversas/criar", {"json": {"usuarioId": alice, "outroUsuarioId": bob}}),
        ("POST", f"{BASE}/conversas/criar", {"json": {"usuarioId": bob, "outroUsuarioId": alice, "tipo": "individual"}}),
        (
            "POST",
            f"{BASE}/conversas/criar",
            {"json": {"usuarioId": alice, "tipo": "group", "nome": "Trip", "participantes": [bob, carol]}},
        ),
        ("POST", f"{BASE}/conversas/criar", {"json": {"usuarioId": alice}}),
    )

    assert direct.json()["id"] == legacy_direct.json()["id"]
    assert group.json()["id"] != direct.json()["id"]
    assert missing_other.status_code == 400

    (listing,) = call(("GET", f"{BASE}/conversas/{carol}", {}))
    (summary,) = listing.json()
    assert summary["tipo"] == "group"
    assert summary["nome"] == "Trip"

    ready = [e["conversationId"] for e in bob_socket.events("conversation_ready")]
    assert ready == [direct.json()["id"], direct.json()["id"], group.json()["id"]]


def test_delete_conversation(registry, users):
    alice, bob, carol = users
    (created,) = call(("POST", f"{BASE}/conversa", {"json": {"usuario1_id": alice, "usuario2_id": bob}}))
    conversation_id = created.json()["conversa_id"]
    url = f"{BASE}/conversas/{conversation_id}"

    _, denied, deleted, history, deleted_again = call(
        ("POST", f"{BASE}/enviar", {"json": {"conversa_id": conversation_id, "usuario_id": bob, "conteudo": "bye"}}),
        ("DELETE", url, {"json": {"usuarioId": carol}}),
        ("DELETE", url, {"json": {"usuarioId": alice}}),
        ("GET", f"{BASE}/mensagens/{conversation_id}", {"params": {"usuarioId": alice}}),
        ("DELETE", url, {"json": {"usuarioId": alice}}),
    )

    assert denied.status_code == 403
    assert deleted.status_code == 200
    assert deleted.json()["success"] is True
    assert history.status_code == 404
    assert deleted_again.status_code == 404

    (bob_list,) = call(("GET", f"{BASE}/conversas/{bob}", {}))
    assert bob_list.json() == []

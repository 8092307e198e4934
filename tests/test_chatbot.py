import pytest
from langchain_core.language_models import FakeListChatModel

from chatbot import ORDER_INQUIRY_REPLY, SHIPPING_INQUIRY_REPLY, ChatbotService, build_chat_model
from errors import ServiceUnavailable
from schemas import ChatContext
from settings import Settings


class BrokenModel:
    def invoke(self, messages):
        raise RuntimeError("upstream timeout")


@pytest.fixture
def chat_model():
    return FakeListChatModel(responses=["The lamp ships in two days."])


def test_message_is_answered_by_the_model(client, make_product):
    product_id = make_product("Desk Lamp", 30.0, 10)
    r = client.post("/api/chatbot/message", json={"message": "When will it ship?", "context": {"productId": product_id}})
    assert r.status_code == 200
    assert r.json() == {"response": "The lamp ships in two days."}


def test_system_prompt_carries_product_and_category(db, make_product, category_id):
    product_id = make_product("Desk Lamp", 30.0, 10)
    service = ChatbotService(db, None)
    prompt = service.build_system_prompt(ChatContext(product_id=product_id, category_id=category_id))
    assert "Product: Desk Lamp" in prompt
    assert "Price: $30.0" in prompt
    assert "Stock: 10 units available" in prompt
    assert "Category: Electronics" in prompt


def test_model_failure_is_a_503(db):
    service = ChatbotService(db, BrokenModel())
    with pytest.raises(ServiceUnavailable) as exc:
        service.generate_response("hi")
    assert exc.value.status_code == 503
    assert exc.value.message == "Failed to generate response"


def test_without_api_key_chat_is_unavailable(db):
    assert build_chat_model(Settings(openai_api_key=None)) is None
    service = ChatbotService(db, None)
    with pytest.raises(ServiceUnavailable) as exc:
        service.generate_response("hi")
    assert exc.value.status_code == 503


def test_message_length_is_limited(client):
    r = client.post("/api/chatbot/message", json={"message": "x" * 501})
    assert r.status_code == 400


def test_search_only_returns_active_products(client, make_product):
    make_product("Desk Lamp", 30.0, 10)
    make_product("Floor Lamp", 80.0, 10, status="pending")
    body = client.post("/api/chatbot/search", json={"query": "lamp"}).json()
    assert [p["name"] for p in body["products"]] == ["Desk Lamp"]


def test_canned_inquiries(client, shopper, make_product, db):
    user, headers = shopper
    order_id = db.create_document("order", {"user_id": str(user["_id"]), "items": [], "total_amount": 0,
                                            "status": "pending"})
    r = client.get(f"/api/chatbot/order/{order_id}", headers=headers)
    assert r.json() == {"response": ORDER_INQUIRY_REPLY}
    r = client.get("/api/chatbot/shipping", params={"location": "Berlin"})
    assert r.json() == {"response": SHIPPING_INQUIRY_REPLY}


def test_recommendations_exclude_the_product_itself(client, shopper, make_product):
    _, headers = shopper
    lamp = make_product("Desk Lamp", 30.0, 10)
    make_product("Lamp Shade", 12.0, 10)
    body = client.get(f"/api/chatbot/recommendations/{lamp}", headers=headers).json()
    assert [p["name"] for p in body["recommendations"]] == ["Lamp Shade"]

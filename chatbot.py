import logging
from typing import Any, Dict, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

import catalog
from database import Database, to_object_id
from errors import ServiceUnavailable
from schemas import ChatContext
from settings import Settings

log = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """\
You are a helpful e-commerce assistant. Your role is to help customers with:
- Product information and recommendations
- Shopping assistance
- Order and shipping inquiries
- General customer support

Current context:
{product_info}
{category_info}

Please provide clear, concise, and helpful responses.
"""

ORDER_INQUIRY_REPLY = "Please check your order status in your account dashboard."
SHIPPING_INQUIRY_REPLY = "We offer standard shipping (3-5 business days) and express shipping (1-2 business days)."


def build_chat_model(settings: Settings) -> Optional[BaseChatModel]:
    if not settings.openai_api_key:
        log.warning("OPENAI_API_KEY not set, chatbot replies are disabled")
        return None
    return ChatOpenAI(
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        max_tokens=150,
        temperature=0.7,
        presence_penalty=0.6,
        timeout=30,
        max_retries=0,
    )


class ChatbotService:
    def __init__(self, db: Database, chat_model: Optional[BaseChatModel]):
        self.db = db
        self.chat_model = chat_model

    def build_system_prompt(self, context: ChatContext) -> str:
        product_info = ""
        if context.product_id:
            product = self.db["product"].find_one({"_id": to_object_id(context.product_id)})
            if product:
                product_info = (
                    f"Product: {product['name']}\n"
                    f"Price: ${product['price']}\n"
                    f"Description: {product.get('description', '')}\n"
                    f"Stock: {product.get('stock', 0)} units available"
                )
        category_info = ""
        if context.category_id:
            category = self.db["category"].find_one({"_id": to_object_id(context.category_id)})
            if category:
                category_info = f"Category: {category['name']}\n{category.get('description') or ''}"
        return SYSTEM_PROMPT_TEMPLATE.format(product_info=product_info, category_info=category_info)

    def generate_response(self, message: str, context: Optional[ChatContext] = None) -> str:
        if self.chat_model is None:
            raise ServiceUnavailable("Failed to generate response")
        messages = [SystemMessage(content=self.build_system_prompt(context or ChatContext())), HumanMessage(content=message)]
        try:
            reply = self.chat_model.invoke(messages)
        except Exception as e:
            log.error("Chatbot error: %s", e)
            raise ServiceUnavailable("Failed to generate response") from e
        return reply.content

    def search_products(self, query: str) -> Dict[str, Any]:
        return catalog.search_products(self.db, keyword=query, status="active", limit=5)

    def recommendations(self, product_id: str) -> List[Dict[str, Any]]:
        product = catalog.get_product(self.db, product_id)
        return catalog.related_products(self.db, product, limit=5)

    def order_inquiry(self, order_id: str) -> str:
        return ORDER_INQUIRY_REPLY

    def shipping_inquiry(self, location: str) -> str:
        return SHIPPING_INQUIRY_REPLY

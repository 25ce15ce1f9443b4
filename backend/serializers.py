from datetime import datetime
from typing import Dict, List, Optional


def serialize_datetime(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"


def serialize_id(value) -> str:
    if isinstance(value, dict):
        value = value.get("_id")
    return str(value) if value is not None else ""


def serialize_product(product_document) -> Dict[str, object]:
    if not isinstance(product_document, dict):
        return {"id": serialize_id(product_document)}

    return {
        "id": serialize_id(product_document.get("_id")),
        "title": product_document.get("title", "") or "",
        "description": product_document.get("description", "") or "",
        "category": product_document.get("category", "") or "",
        "image": product_document.get("image"),
        "price": product_document.get("price"),
    }


def serialize_customer_summary(user_document) -> Dict[str, object]:
    if not isinstance(user_document, dict):
        return {"id": serialize_id(user_document)}

    return {
        "id": serialize_id(user_document.get("_id")),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "phone": user_document.get("phone", "") or "",
    }


def serialize_order(order_document) -> Optional[Dict[str, object]]:
    if order_document is None:
        return None
    if not isinstance(order_document, dict):
        return {"id": serialize_id(order_document)}

    return {
        "id": serialize_id(order_document.get("_id")),
        "orderNumber": order_document.get("orderNumber"),
        "status": order_document.get("status", "") or "",
        "totalAmount": order_document.get("totalAmount", 0),
        "products": [
            serialize_product(product) for product in order_document.get("products") or []
        ],
        "customer": serialize_customer_summary(order_document.get("customer")),
        "payment": order_document.get("payment", "") or "",
        "email": order_document.get("email", "") or "",
        "phone": order_document.get("phone", "") or "",
        "deliveryAddress": order_document.get("deliveryAddress", "") or "",
        "comment": order_document.get("comment", "") or "",
        "createdAt": serialize_datetime(order_document.get("createdAt")),
    }


def serialize_customer(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    orders: List[Dict[str, object]] = [
        serialize_order(order) for order in user_document.get("orders") or []
    ]
    return {
        **serialize_customer_summary(user_document),
        "deliveryAddress": user_document.get("deliveryAddress", "") or "",
        "totalAmount": user_document.get("totalAmount", 0) or 0,
        "orderCount": user_document.get("orderCount", 0) or 0,
        "orders": orders,
        "lastOrder": serialize_order(user_document.get("lastOrder")),
        "lastOrderDate": serialize_datetime(user_document.get("lastOrderDate")),
        "createdAt": serialize_datetime(user_document.get("createdAt")),
    }

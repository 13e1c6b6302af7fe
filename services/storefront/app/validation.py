"""
Storefront Service — 顧客入力バリデーション

書き込みを行う前に、氏名・電話番号・住所・配送先都市を検証する。
サニタイズ(タグ文字やスクリプト風パターンの除去)を先に行い、
その後 pydantic モデルで形式を検証する。
"""

import re

import pydantic
from pydantic import BaseModel, field_validator

from .errors import ValidationError

NAME_MIN = 2
NAME_MAX = 100
ADDRESS_MIN = 10
ADDRESS_MAX = 500
PHONE_LENGTH = 10

NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s'-]+$")
# 携帯番号: 06 / 07 で始まる10桁(ASCII 数字のみ)
PHONE_DIGITS = re.compile(r"^[0-9]{10}$")
PHONE_PATTERN = re.compile(r"^0[67][0-9]{8}$")

_ANGLE_BRACKETS = re.compile(r"[<>]")
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+=", re.IGNORECASE)


def sanitize_input(value: str) -> str:
    """前後の空白を除き、タグ文字・javascript: ・onXxx= を取り除く。"""
    value = value.strip()
    value = _ANGLE_BRACKETS.sub("", value)
    value = _JS_PROTOCOL.sub("", value)
    return _EVENT_HANDLER.sub("", value)


class CustomerDetails(BaseModel):
    """
    検証済みの顧客情報。

    フィールドの定義順 = エラー報告の優先順(name → phone → address → city)。
    """

    name: str
    phone: str
    address: str
    city: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if len(v) < NAME_MIN:
            raise ValueError(f"Name must be at least {NAME_MIN} characters")
        if len(v) > NAME_MAX:
            raise ValueError(f"Name must be at most {NAME_MAX} characters")
        if not NAME_PATTERN.match(v):
            raise ValueError("Name contains invalid characters")
        return v

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, v: str) -> str:
        if not PHONE_DIGITS.fullmatch(v):
            raise ValueError(f"Phone number must contain exactly {PHONE_LENGTH} digits")
        if not PHONE_PATTERN.fullmatch(v):
            raise ValueError("Invalid phone number (must start with 06 or 07)")
        return v

    @field_validator("address")
    @classmethod
    def _check_address(cls, v: str) -> str:
        if len(v) < ADDRESS_MIN:
            raise ValueError(f"Address must be at least {ADDRESS_MIN} characters")
        if len(v) > ADDRESS_MAX:
            raise ValueError(f"Address must be at most {ADDRESS_MAX} characters")
        return v

    @field_validator("city")
    @classmethod
    def _check_city(cls, v: str) -> str:
        if not v:
            raise ValueError("Please select a city")
        return v


def validate_customer(name: str, phone: str, address: str, city: str) -> CustomerDetails:
    """
    生の入力を検証して CustomerDetails を返す。

    Raises:
        ValidationError: 最初に見つかった不正フィールド。
    """
    try:
        return CustomerDetails(
            name=sanitize_input(name),
            phone=phone.strip(),
            address=sanitize_input(address),
            city=city.strip(),
        )
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first["loc"] else "unknown"
        reason = first["msg"].removeprefix("Value error, ")
        raise ValidationError(field, reason) from None

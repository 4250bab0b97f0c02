from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CallbackItem(BaseModel):
    name: str = Field(..., alias="Name")
    value: Optional[Union[int, float, str]] = Field(default=None, alias="Value")

    model_config = ConfigDict(populate_by_name=True)


class CallbackMetadata(BaseModel):
    items: list[CallbackItem] = Field(default_factory=list, alias="Item")

    model_config = ConfigDict(populate_by_name=True)

    def as_map(self) -> dict[str, Any]:
        return {item.name: item.value for item in self.items}


class StkCallback(BaseModel):
    merchant_request_id: str = Field(..., alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    model_config = ConfigDict(populate_by_name=True)

    def is_success(self) -> bool:
        return self.result_code == 0


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")

    model_config = ConfigDict(populate_by_name=True)


class DarajaWebhook(BaseModel):
    body: CallbackBody = Field(..., alias="Body")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": "ws_CO_191220191020363925",
                    "ResultCode": 0,
                    "ResultDesc": "The service request is processed successfully.",
                    "CallbackMetadata": {
                        "Item": [
                            {"Name": "Amount", "Value": 250.00},
                            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                            {"Name": "PhoneNumber", "Value": 254708374149},
                        ]
                    },
                }
            }
        }
    })

    @property
    def callback(self) -> StkCallback:
        return self.body.stk_callback


class IdempotencyStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookIdempotencyRecord(BaseModel):
    idempotency_key: str
    status: IdempotencyStatus
    created_at: datetime
    processed_at: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class WebhookOutcome(BaseModel):
    idempotency_key: str
    duplicate: bool = False
    result_code: Optional[int] = None
    transaction_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    message: str


class SignupRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    phone_number: str = Field(..., min_length=9, max_length=15)


class SignupResponse(BaseModel):
    accepted: bool
    message: str
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    transaction_id: Optional[UUID] = None
    reasons: list[str] = Field(default_factory=list)


class StkPushResponse(BaseModel):
    merchant_request_id: str = Field(..., alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID")
    response_code: str = Field(default="0", alias="ResponseCode")
    response_description: str = Field(default="", alias="ResponseDescription")
    customer_message: str = Field(default="", alias="CustomerMessage")

    model_config = ConfigDict(populate_by_name=True)

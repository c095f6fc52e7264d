from typing import Any, List, Optional

from pydantic import BaseModel, Field


class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class StkCallbackMetadata(BaseModel):
    Item: List[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str = Field(min_length=1)
    ResultCode: int
    ResultDesc: str = ""
    CallbackMetadata: Optional[StkCallbackMetadata] = None

    def metadata_value(self, name: str) -> Any:
        """Metadata items arrive in no particular order and may be missing entirely."""
        if not self.CallbackMetadata:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None


class CallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    Body: CallbackBody

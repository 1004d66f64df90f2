from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ContactProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    contact_id: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    process_reference: str = ""
    profession: str = ""
    national_id: str = ""
    deal_id: str = ""
    avatar_url: str = ""

    @property
    def has_deal(self) -> bool:
        return bool(self.deal_id)

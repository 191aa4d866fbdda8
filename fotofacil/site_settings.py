from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import SiteSetting


class SiteSettings(BaseModel):
    """Contact and footer configuration. Missing rows fall back to these defaults."""

    company_name: str = "Produtora Viva"
    logo_url: str = ""
    contact_phone: str = "(45) 99988-7766"
    contact_email: str = "info@produtoraviva.com"
    whatsapp_number: str = "5545999887766"
    instagram_url: str = "https://instagram.com/produtoraviva"
    facebook_url: str = "https://facebook.com/produtoraviva"
    youtube_url: str = ""
    tiktok_url: str = ""
    linkedin_url: str = ""
    footer_text: str = ""


def load_site_settings(db: Session) -> SiteSettings:
    rows = db.execute(select(SiteSetting.setting_key, SiteSetting.setting_value)).all()
    known = SiteSettings.model_fields
    values = {k: v for k, v in rows if k in known and v is not None}
    return SiteSettings(**values)

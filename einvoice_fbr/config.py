"""PRAL digital invoicing endpoints."""

from dataclasses import dataclass

from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode

BASE_URL = "https://gw.fbr.gov.pk"


@dataclass(frozen=True)
class FbrEndpoints:
    base_url: str = BASE_URL
    sandbox_submit: str = "/di_data/v1/di/postinvoicedata_sb"
    production_submit: str = "/di_data/v1/di/postinvoicedata"
    sandbox_validate: str = "/di_data/v1/di/validateinvoicedata_sb"
    production_validate: str = "/di_data/v1/di/validateinvoicedata"

    def submit_url(self, mode: IntegrationMode) -> str:
        if mode is IntegrationMode.SANDBOX:
            return self._join(self.sandbox_submit)
        if mode is IntegrationMode.PRODUCTION:
            return self._join(self.production_submit)
        raise ValueError(f"No FBR endpoint for {mode.value} mode")

    def validate_url(self, mode: IntegrationMode) -> str:
        if mode is IntegrationMode.SANDBOX:
            return self._join(self.sandbox_validate)
        if mode is IntegrationMode.PRODUCTION:
            return self._join(self.production_validate)
        raise ValueError(f"No FBR endpoint for {mode.value} mode")

    def _join(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


DEFAULT_ENDPOINTS = FbrEndpoints()

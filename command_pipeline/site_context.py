"""
Site context and prompt construction.

The site context is a text blob describing the pages and catalogue the user is
looking at; it is passed verbatim into every AIRequest. It is rendered from a
YAML catalogue (PyYAML safe_load also reads plain JSON files).

Prompts are French: the product speaks French to its users.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import AIRequest


SYSTEM_PROMPT = (
    "Tu es un assistant vocal pour un site web. Tu dois générer des réponses "
    "et des scripts d'affichage basés sur les demandes vocales des utilisateurs."
)

USER_PROMPT_TEMPLATE = """
Contexte du site: {site_context}

L'utilisateur a dit: "{utterance}"

En tant qu'assistant vocal pour ce site web, génère une réponse appropriée et un script d'affichage si nécessaire.
Le script ne peut utiliser que ces instructions, séparées par des points-virgules:
  navigate('/chemin'), speak('texte'), scroll('top' ou 'bottom'), highlight('sélecteur CSS')
Format de réponse attendu:
{{response: 'Le texte à dire à l'utilisateur', script: 'Les instructions d'affichage (optionnel)'}}
""".strip()


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str

    def as_single_text(self) -> str:
        """Flattened form for backends that take one prompt string."""
        return f"{self.system}\n\n{self.user}"


def build_prompt(request: AIRequest) -> Prompt:
    return Prompt(
        system=SYSTEM_PROMPT,
        user=USER_PROMPT_TEMPLATE.format(
            site_context=request.site_context.strip(),
            utterance=request.utterance,
        ),
    )


def _default_catalog_path() -> Path:
    return Path(__file__).parent / "site" / "catalog.yaml"


def load_catalog(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load a site catalogue (YAML or JSON)."""
    path = path or _default_catalog_path()
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Site catalog {path} must contain a mapping at top-level")
    return data


def render_site_context(catalog: Dict[str, Any]) -> str:
    lines = ["Ce site web contient les pages suivantes:"]
    for page in catalog.get("pages") or []:
        lines.append(f"- {page.get('title', page.get('path', '?'))} ({page.get('path', '/')}): {page.get('summary', '')}")

    products = catalog.get("products") or []
    if products:
        lines.append("Produits:")
        for product in products:
            price = product.get("price") or "Prix non spécifié"
            lines.append(f"  * {product.get('name', '?')}: {price}")
    return "\n".join(lines)


class SiteContextProvider:
    """Callable returning the current site context blob (rendered once)."""

    def __init__(self, catalog_path: Optional[str] = None):
        self._path = Path(catalog_path) if catalog_path else None
        self._rendered: Optional[str] = None

    def __call__(self) -> str:
        if self._rendered is None:
            self._rendered = render_site_context(load_catalog(self._path))
        return self._rendered

"""
Language Profiles

Per-language prompt text and intent keyword extensions, plus the
LocalizationProvider that resolves a caller's language code to a profile
with a defined fallback order.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en-US"


@dataclass(frozen=True)
class LanguageProfile:
    """Prompts and keyword extensions for one supported language"""

    code: str
    name: str
    prompts: Mapping[str, str]
    keywords: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    fallback: Optional[str] = None

    @property
    def base_language(self) -> str:
        return self.code.split("-")[0].lower()

    def extra_keywords(self, category: str) -> Tuple[str, ...]:
        """Keywords this language adds to an intent category"""
        return tuple(self.keywords.get(category, ()))


ENGLISH = LanguageProfile(
    code="en-US",
    name="English (US)",
    prompts={
        "welcome": (
            "Hello, and thank you for reaching out. I'm here to listen and help you find support. "
            "If you are in immediate danger, please call 911. What brings you to call today?"
        ),
        "incompleteLocation": (
            "I'd be happy to help you find shelter. Which city, state, and country are you looking in? "
            "For example, 'near San Francisco, California, USA'."
        ),
        "currentLocation": (
            "I understand you want resources near you. To find the closest ones, could you tell me "
            "which city, state, and country you're in? For example, 'I'm in Austin, Texas'."
        ),
        "locationPrompt": (
            "To help you find the right resources, could you tell me which city, state, and country "
            "you're looking in? For example, 'San Francisco, California, USA'."
        ),
        "moreSpecificLocation": (
            "I found a place, but I need a little more detail. Could you include the state or "
            "province and the country? For example, 'Springfield, Illinois, USA'."
        ),
        "confirmLocation": (
            "You mentioned {location} earlier. Would you like me to search for resources there? "
            "Please say yes or no."
        ),
        "usePreviousLocation": (
            "You mentioned {location} earlier. Should I use that location, or would you like to "
            "give a different one?"
        ),
        "emergency": (
            "This sounds like an emergency. Please call 911 now. You can also call the National "
            "Domestic Violence Hotline at 1-800-799-7233, available 24/7."
        ),
        "fallback": (
            "I'm sorry, I didn't understand. Could you rephrase, or ask for help finding shelters, "
            "legal services, or counseling?"
        ),
        "repeatUnclear": "I'm having trouble understanding. Could you please repeat that more clearly?",
        "repeatLocation": (
            "I think you said something about a location. Could you repeat the place name more clearly?"
        ),
        "repeatGeneric": "Could you please repeat that? I want to make sure I understand correctly.",
        "error": "I'm sorry, something went wrong on my end. Please try again.",
        "processingError": (
            "I'm sorry, I couldn't process that. Please try again with a specific location."
        ),
    },
)

SPANISH = LanguageProfile(
    code="es-ES",
    name="Español (España)",
    fallback="en-US",
    prompts={
        "welcome": (
            "Hola, gracias por llamar. Estoy aquí para escucharte y ayudarte a encontrar apoyo. "
            "Si estás en peligro inmediato, llama al 911. ¿En qué puedo ayudarte hoy?"
        ),
        "incompleteLocation": (
            "Con gusto te ayudo a encontrar un refugio. ¿En qué ciudad, estado y país estás buscando?"
        ),
        "currentLocation": (
            "Entiendo que quieres recursos cerca de ti. ¿Podrías decirme en qué ciudad, estado y "
            "país te encuentras?"
        ),
        "locationPrompt": (
            "Para encontrar los recursos adecuados, ¿podrías decirme la ciudad, el estado y el país?"
        ),
        "moreSpecificLocation": (
            "Encontré un lugar, pero necesito más detalles. ¿Podrías incluir el estado o la "
            "provincia y el país?"
        ),
        "confirmLocation": (
            "Mencionaste {location} antes. ¿Quieres que busque recursos en esa zona? Di sí o no."
        ),
        "usePreviousLocation": (
            "Mencionaste {location} antes. ¿Uso esa ubicación o prefieres darme otra?"
        ),
        "emergency": (
            "Esto parece una emergencia. Llama al 911 ahora. También puedes llamar a la Línea "
            "Nacional de Violencia Doméstica al 1-800-799-7233."
        ),
        "fallback": (
            "Lo siento, no entendí. ¿Podrías repetirlo o pedir ayuda para encontrar refugios, "
            "servicios legales o asesoramiento?"
        ),
        "repeatUnclear": "Me cuesta entenderte. ¿Podrías repetirlo más despacio?",
        "repeatLocation": "Creo que mencionaste un lugar. ¿Podrías repetir el nombre con más claridad?",
        "repeatGeneric": "¿Podrías repetirlo? Quiero asegurarme de entenderte bien.",
        "error": "Lo siento, ocurrió un error. Por favor intenta de nuevo.",
    },
    keywords={
        "emergency": ("emergencia", "peligro", "policía", "urgente", "me lastiman", "miedo"),
        "find_shelter": ("refugio", "albergue", "lugar seguro", "dónde quedarme"),
        "legal_help": ("abogado", "legal", "orden de alejamiento", "custodia", "divorcio"),
        "counseling": ("terapia", "consejero", "psicólogo", "hablar con alguien"),
        "safety_planning": ("plan de seguridad", "cómo salir", "salir segura"),
        "general_help": ("ayuda", "apoyo", "recursos", "información"),
    },
)

FRENCH = LanguageProfile(
    code="fr-FR",
    name="Français (France)",
    fallback="en-US",
    prompts={
        "welcome": (
            "Bonjour, merci de nous avoir contactés. Je suis là pour vous écouter et vous aider. "
            "Si vous êtes en danger immédiat, appelez le 911. Comment puis-je vous aider ?"
        ),
        "currentLocation": (
            "Je comprends que vous cherchez des ressources près de vous. Dans quelle ville, quelle "
            "région et quel pays vous trouvez-vous ?"
        ),
        "locationPrompt": (
            "Pour trouver les bonnes ressources, pourriez-vous me dire la ville, la région et le pays ?"
        ),
        "moreSpecificLocation": (
            "J'ai trouvé un lieu, mais il me faut plus de détails. Pourriez-vous préciser la région "
            "et le pays ?"
        ),
        "confirmLocation": (
            "Vous avez mentionné {location} plus tôt. Voulez-vous que je cherche dans cette région ?"
        ),
        "emergency": (
            "C'est une situation d'urgence. Appelez le 911 immédiatement."
        ),
        "fallback": (
            "Je suis désolé, je n'ai pas compris. Pourriez-vous reformuler votre demande ?"
        ),
        "repeatUnclear": "J'ai du mal à vous comprendre. Pourriez-vous répéter plus clairement ?",
        "repeatGeneric": "Pourriez-vous répéter ? Je veux être sûr de bien comprendre.",
    },
    keywords={
        "emergency": ("urgence", "danger", "police", "peur"),
        "find_shelter": ("refuge", "hébergement", "foyer", "endroit sûr"),
        "legal_help": ("avocat", "juridique", "tribunal", "garde des enfants"),
        "counseling": ("thérapie", "psychologue", "parler à quelqu'un"),
        "safety_planning": ("plan de sécurité", "partir en sécurité"),
        "general_help": ("aide", "soutien", "ressources"),
    },
)

GERMAN = LanguageProfile(
    code="de-DE",
    name="Deutsch (Deutschland)",
    fallback="en-US",
    prompts={
        "welcome": (
            "Hallo und danke für Ihren Anruf. Ich bin hier, um zuzuhören und Ihnen zu helfen. "
            "Wenn Sie in unmittelbarer Gefahr sind, rufen Sie bitte 911 an. Wie kann ich helfen?"
        ),
        "currentLocation": (
            "Sie möchten Hilfe in Ihrer Nähe. In welcher Stadt, welchem Bundesland und welchem "
            "Land befinden Sie sich?"
        ),
        "locationPrompt": (
            "Damit ich die richtigen Angebote finde: In welcher Stadt, welchem Bundesland und "
            "welchem Land suchen Sie?"
        ),
        "moreSpecificLocation": (
            "Ich habe einen Ort gefunden, brauche aber genauere Angaben. Bitte nennen Sie auch das "
            "Bundesland und das Land."
        ),
        "emergency": "Dies ist ein Notfall. Bitte rufen Sie sofort 911 an.",
        "fallback": "Entschuldigung, das habe ich nicht verstanden. Können Sie es anders formulieren?",
        "repeatGeneric": "Könnten Sie das bitte wiederholen?",
    },
    keywords={
        "emergency": ("notfall", "gefahr", "polizei", "angst"),
        "find_shelter": ("frauenhaus", "unterkunft", "sicherer ort", "zuflucht"),
        "legal_help": ("anwalt", "anwältin", "gericht", "sorgerecht", "scheidung"),
        "counseling": ("beratung", "therapie", "psychologe"),
        "safety_planning": ("sicherheitsplan", "sicher verlassen"),
        "general_help": ("hilfe", "unterstützung", "informationen"),
    },
)

SUPPORTED_LANGUAGES: Dict[str, LanguageProfile] = {
    profile.code: profile for profile in (ENGLISH, SPANISH, FRENCH, GERMAN)
}


class LocalizationProvider:
    """Resolves language codes to profiles and renders prompt text"""

    def __init__(self, profiles: Optional[Mapping[str, LanguageProfile]] = None,
                 default_language: str = DEFAULT_LANGUAGE):
        self.profiles: Dict[str, LanguageProfile] = dict(profiles or SUPPORTED_LANGUAGES)
        if default_language not in self.profiles:
            raise ValueError(f"Default language {default_language} has no profile")
        self.default_language = default_language

    def resolve(self, language: Optional[str]) -> LanguageProfile:
        """
        Find the profile for a language code.

        Order: exact code (case and separator insensitive), then any profile
        with the same base language, then the default language.
        """
        if not language:
            return self.profiles[self.default_language]

        normalized = language.strip().replace("_", "-").lower()
        for code, profile in self.profiles.items():
            if code.lower() == normalized:
                return profile

        base = normalized.split("-")[0]
        for profile in self.profiles.values():
            if profile.base_language == base:
                return profile

        logger.debug(f"Unsupported language {language}, using {self.default_language}")
        return self.profiles[self.default_language]

    def fallback_chain(self, language: Optional[str]):
        """Profiles to consult for a prompt, most specific first"""
        chain = []
        profile = self.resolve(language)
        while profile is not None and profile not in chain:
            chain.append(profile)
            profile = self.profiles.get(profile.fallback) if profile.fallback else None
        default = self.profiles[self.default_language]
        if default not in chain:
            chain.append(default)
        return chain

    def get_prompt(self, language: Optional[str], prompt_key: str,
                   params: Optional[Dict[str, str]] = None) -> str:
        """Render a prompt, falling back through related languages when a key is missing"""
        for profile in self.fallback_chain(language):
            template = profile.prompts.get(prompt_key)
            if template is None:
                continue
            try:
                return template.format(**(params or {}))
            except KeyError as e:
                logger.warning(f"⚠️ Prompt {prompt_key} ({profile.code}) missing parameter {e}")
                return template
        logger.warning(f"⚠️ No prompt text for key {prompt_key}")
        return ""

    def supported_languages(self):
        return list(self.profiles.keys())

    def is_supported(self, language: str) -> bool:
        return language in self.profiles


localization = LocalizationProvider()

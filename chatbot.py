# chatbot.py — assistant d'accueil par mots-clés (FR) et historique de conversation borné
import itertools
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Tuple

from flask import Blueprint, current_app, jsonify, request

from errors import NotFoundError, ValidationError
from models import Doctor

chatbot_bp = Blueprint("chatbot", __name__)

RESPONSES = {
    "booking": (
        "Pour prendre un rendez-vous, indiquez la date, l'heure et le médecin de votre choix si vous avez une préférence.",
        ["Avez-vous un médecin préféré ?", "Quelle date vous conviendrait le mieux ?"],
    ),
    "doctors": (
        "Voici nos médecins disponibles : {doctors}.",
        ["Souhaitez-vous prendre rendez-vous avec l'un d'entre eux ?", "Recherchez-vous une spécialité particulière ?"],
    ),
    "doctor_availability": (
        "Précisez le médecin dont vous souhaitez connaître les disponibilités.",
        ["Quel médecin vous intéresse ?", "Avez-vous une date particulière en tête ?"],
    ),
    "reschedule": (
        "Pour reporter votre rendez-vous, indiquez son identifiant ou la date et l'heure actuelles.",
        ["Avez-vous votre identifiant de rendez-vous ?", "Avec quel médecin aviez-vous rendez-vous ?"],
    ),
    "cancel": (
        "Pour annuler, indiquez l'identifiant de votre rendez-vous ou sa date et son heure.",
        ["Avez-vous votre identifiant de rendez-vous ?", "Souhaitez-vous le reprogrammer ?"],
    ),
    "hours": (
        "La clinique est ouverte du lundi au vendredi de 8h à 18h et le samedi de 9h à 14h.",
        ["Souhaitez-vous prendre un rendez-vous ?"],
    ),
    "payment": (
        "Nous acceptons la carte bancaire, les espèces et les chèques. La plupart des consultations sont prises en charge par l'assurance maladie.",
        ["Acceptez-vous ma mutuelle ?", "Quel est le coût d'une consultation ?"],
    ),
    "documents": (
        "Vos documents médicaux sont disponibles à la réception ou dans votre espace patient sous 48 heures.",
        ["Comment accéder à mon espace patient ?"],
    ),
    "medical_advice": (
        "Je ne peux pas donner de conseil médical. Souhaitez-vous prendre rendez-vous avec l'un de nos médecins ?",
        ["Oui, je voudrais prendre rendez-vous", "Quels médecins sont disponibles ?"],
    ),
    "thanks": (
        "Je vous en prie ! Puis-je faire autre chose pour vous ?",
        ["Oui, j'ai une autre question", "Non, c'est tout"],
    ),
    "greeting": (
        "Bonjour ! Comment puis-je vous aider pour vos rendez-vous médicaux ?",
        ["Je voudrais prendre un rendez-vous", "Quels sont vos horaires d'ouverture ?"],
    ),
}

KEYWORDS = {
    "booking": ["réserver", "prendre", "rendez-vous", "planifier", "programmer", "consultation", "visite"],
    "doctors": ["médecin", "docteur", "spécialiste", "praticien", "dr"],
    "doctor_availability": ["disponible", "disponibilité", "quand", "planning", "agenda"],
    "reschedule": ["reporter", "reprogrammer", "changer", "déplacer", "modifier", "autre date"],
    "cancel": ["annuler", "supprimer", "retirer"],
    "hours": ["horaires", "heures", "ouverture", "fermeture", "ouvert", "fermé"],
    "payment": ["paiement", "payer", "tarif", "prix", "coût", "facture", "assurance", "mutuelle"],
    "documents": ["document", "dossier", "résultat", "ordonnance", "certificat", "attestation"],
    "medical_advice": ["symptôme", "diagnostic", "maladie", "douleur", "médicament", "fièvre", "toux"],
    "thanks": ["merci", "remercie", "thanks"],
    "greeting": ["bonjour", "salut", "bonsoir", "coucou", "hello"],
}


def detect_intent(message: str) -> str:
    text = message.lower().strip()
    for intent, (_, follow_ups) in RESPONSES.items():
        if any(text == q.lower() for q in follow_ups):
            return intent
    best, best_score = "greeting", 0
    for intent, words in KEYWORDS.items():
        score = sum(1 for w in words if w in text)
        if score > best_score:
            best, best_score = intent, score
    return best


def build_response(intent: str) -> dict:
    text, follow_ups = RESPONSES[intent]
    if intent == "doctors":
        doctors = Doctor.query.filter_by(is_active=True).limit(5).all()
        if doctors:
            names = ", ".join(
                f"{d.name} ({d.specialty.name})" if d.specialty else d.name for d in doctors
            )
            text = text.format(doctors=names)
        else:
            text = "Aucun médecin n'est disponible pour le moment."
    return {"intent": intent, "response": text, "followUpQuestions": list(follow_ups)}


class ConversationStore:
    """Historique en mémoire, borné des deux côtés.

    - une session est créée au premier message et supprimée sur reset explicite;
    - au plus `max_messages` messages par session (les plus anciens sont oubliés);
    - au-delà de `max_sessions`, la session utilisée le moins récemment est évincée.
    """

    def __init__(self, max_sessions: int = 1000, max_messages: int = 20):
        self.max_sessions = max_sessions
        self.max_messages = max_messages
        # session_id -> (messages, dernier accès)
        self._sessions: Dict[str, Tuple[List[dict], int]] = {}
        self._clock = itertools.count()
        self._lock = threading.Lock()

    def _cleanup_if_needed(self):
        if len(self._sessions) > self.max_sessions:
            sorted_items = sorted(self._sessions.items(), key=lambda x: x[1][1])
            to_remove = len(self._sessions) - self.max_sessions
            for key, _ in sorted_items[:to_remove]:
                del self._sessions[key]

    def append(self, session_id: str, text: str, is_user: bool) -> None:
        entry = {"text": text, "isUser": is_user, "timestamp": datetime.utcnow().isoformat()}
        with self._lock:
            history, _ = self._sessions.get(session_id, ([], 0))
            history.append(entry)
            self._sessions[session_id] = (history[-self.max_messages:], next(self._clock))
            self._cleanup_if_needed()

    def get(self, session_id: str):
        with self._lock:
            if session_id not in self._sessions:
                return None
            history, _ = self._sessions[session_id]
            self._sessions[session_id] = (history, next(self._clock))
            return list(history)

    def clear(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self):
        return len(self._sessions)


def _store() -> ConversationStore:
    return current_app.extensions["chatbot_store"]


def init_chatbot(app):
    app.extensions["chatbot_store"] = ConversationStore(
        max_sessions=app.config.get("CHATBOT_MAX_SESSIONS", 1000),
        max_messages=app.config.get("CHATBOT_MAX_MESSAGES", 20),
    )


@chatbot_bp.route("/message", methods=["POST"])
def process_message():
    data = request.get_json(silent=True) or {}
    message = (data.get("message") or "").strip()
    if not message:
        raise ValidationError("message est requis")
    session_id = data.get("sessionId") or uuid.uuid4().hex

    store = _store()
    store.append(session_id, message, True)
    reply = build_response(detect_intent(message))
    store.append(session_id, reply["response"], False)
    current_app.logger.debug("[CHATBOT] session=%s intent=%s", session_id, reply["intent"])
    return jsonify({"success": True, "data": {"sessionId": session_id, **reply}})


@chatbot_bp.route("/history/<session_id>", methods=["GET"])
def conversation_history(session_id):
    history = _store().get(session_id)
    if history is None:
        raise NotFoundError("Conversation introuvable")
    return jsonify({"success": True, "data": history})


@chatbot_bp.route("/history/<session_id>", methods=["DELETE"])
def clear_conversation(session_id):
    cleared = _store().clear(session_id)
    return jsonify({"success": True, "cleared": cleared})

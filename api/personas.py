import os
import re
import json
import logging

logger = logging.getLogger(__name__)

# ==========================================
# PERSONA CATALOGUE
# ==========================================
PERSONAS = {
    "alfa": {"name": "Alfa", "title": "Digital Marketing Expert",
             "focus": "campaigns, content, tracking, A/B testing and the sales funnel"},
    "vizi": {"name": "Vizi", "title": "Sales Expert",
             "focus": "closing deals, CRM hygiene, value propositions and handling objections"},
    "cortex": {"name": "Cortex", "title": "Finance Expert",
               "focus": "budgets, cash flow and KPI reporting"},
    "lex": {"name": "Lex", "title": "Customer Service Lead",
            "focus": "SLAs, reply templates, CSAT and escalation paths"},
    "octo": {"name": "Octo", "title": "Operations Expert",
             "focus": "SOPs, automation and workflow improvement"},
    "mina": {"name": "Mina", "title": "Data Analyst",
             "focus": "dashboards, KPIs and actionable insights"},
    "bolt": {"name": "Bolt", "title": "Project Manager",
             "focus": "scope, schedule, cost, risk, plans and timelines"},
    "rex": {"name": "Rex", "title": "Operational Finance Manager",
            "focus": "departmental budgets and cost control"},
    "buddy": {"name": "Buddy", "title": "Public Relations Expert",
              "focus": "messaging, press releases and reputation"},
    "rover": {"name": "Rover", "title": "Customer Relationship Manager",
              "focus": "loyalty, segmentation and customer journeys"},
    "valor": {"name": "Valor", "title": "E-commerce Expert",
              "focus": "conversion rate optimisation, inventory and checkout experience"},
    "zenith": {"name": "Zenith", "title": "Innovation & Product Lead",
               "focus": "roadmaps, competitor analysis and MVP definition"},
}

BASE_INSTRUCTION = {
    "en": ("You are a professional business advisor. Answer clearly and precisely, focus on results "
           "and execution, and use short headings and bullet points where they help. No filler."),
    "ar": ("You are a professional business advisor. Reply in Arabic, clearly and precisely, focus on "
           "results and execution, and use short headings and bullet points where they help. No filler."),
}

# "Marketing (Alfa)" style labels used by the persona picker
_LABEL_RE = re.compile(r'\(([^)]+)\)\s*$')


def list_personas():
    return [{"id": slug, **info} for slug, info in PERSONAS.items()]


def resolve_persona(value):
    """Map a slug, a display name or a "Label (Name)" string to a persona slug."""
    if not value or not isinstance(value, str):
        return None

    candidates = [value.strip()]
    m = _LABEL_RE.search(value)
    if m:
        candidates.append(m.group(1).strip())

    for candidate in candidates:
        key = candidate.lower()
        if key in PERSONAS:
            return key
        for slug, info in PERSONAS.items():
            if info['name'].lower() == key or info['title'].lower() == key:
                return slug
    return None


# ==========================================
# DIRECTIVES
# ==========================================
_DIRECTIVES_CACHE = {}
EMPTY_DIRECTIVES = {"version": "0", "default": {}, "personas": {}}


def load_directives(path):
    """Load the persona directives document, cached per path."""
    if not path:
        return EMPTY_DIRECTIVES
    key = os.path.abspath(path)
    if key in _DIRECTIVES_CACHE:
        return _DIRECTIVES_CACHE[key]

    data = EMPTY_DIRECTIVES
    if os.path.exists(key):
        try:
            with open(key, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
            else:
                logger.warning("Directives file %s is not an object; ignoring", key)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not load directives file %s: %s", key, e)

    _DIRECTIVES_CACHE[key] = data
    return data


def clear_directives_cache():
    _DIRECTIVES_CACHE.clear()


def _ensure_list(x):
    if isinstance(x, list):
        return [i for i in x if i]
    return [x] if x else []


def _directive_blocks(slug, directives):
    base = directives.get('default') or {}
    personas = directives.get('personas') or {}
    persona = personas.get(slug) or {}
    if slug and not persona:
        # Directives may be keyed by display name instead of slug
        persona = personas.get(PERSONAS[slug]['name']) or {}

    blocks = []

    policy = base.get('language_policy') or {}
    if policy:
        blocks.append("\n".join([
            "LANG_POLICY:",
            f"- mirror_user_language: {'true' if policy.get('mirror_user_language') else 'false'}",
            f"- primary: {', '.join(_ensure_list(policy.get('primary')))}",
            f"- fallback_order: {', '.join(_ensure_list(policy.get('fallback_order')))}",
        ]))

    style_lines = []
    tone = persona.get('tone') or base.get('tone')
    if tone:
        style_lines.append(f"TONE: {tone}")
    if base.get('style'):
        style_lines.append(f"STYLE: {base['style']}")
    kpis = _ensure_list(persona.get('kpis') or base.get('kpis'))
    if kpis:
        style_lines.append(f"KPIs: {', '.join(kpis)}")
    hints = _ensure_list(persona.get('plan_snippets'))
    if hints:
        style_lines.append("PLAN_HINTS:\n" + "\n".join(f"- {h}" for h in hints))
    if style_lines:
        blocks.append("\n".join(style_lines))

    hard = _ensure_list(base.get('hard_rules')) + _ensure_list(persona.get('hard_rules'))
    if hard:
        blocks.append("HARD_RULES:\n" + "\n".join(f"{i}. {r}" for i, r in enumerate(hard, 1)))

    soft = _ensure_list(base.get('soft_rules')) + _ensure_list(persona.get('soft_rules'))
    if soft:
        blocks.append("SOFT_RULES:\n" + "\n".join(f"{i}. {r}" for i, r in enumerate(soft, 1)))

    probing = base.get('probing') or {}
    question_lines = [f"- {k}: {' | '.join(v)}" for k, v in probing.items() if isinstance(v, list) and v]
    priority = _ensure_list(persona.get('probing_priority'))
    if priority:
        question_lines.append(f"PRIORITY: {' -> '.join(priority)}")
    if question_lines:
        blocks.append("PROBING:\n" + "\n".join(question_lines))

    return blocks


def _company_block(company):
    if not isinstance(company, dict):
        return ''
    lines = [f"- {k}: {v}" for k, v in company.items() if isinstance(v, (str, int, float)) and str(v).strip()]
    if not lines:
        return ''
    return "COMPANY CONTEXT:\n" + "\n".join(lines)


def build_system_prompt(persona=None, lang='en', directives=None, company=None):
    """Assemble the system prompt for the chosen persona."""
    slug = resolve_persona(persona) if persona else None

    parts = [BASE_INSTRUCTION.get(lang, BASE_INSTRUCTION['en'])]
    if slug:
        info = PERSONAS[slug]
        parts.append(f"Your persona: {info['name']}, {info['title']} ({info['focus']}).")

    if directives:
        parts.extend(_directive_blocks(slug, directives))

    company_text = _company_block(company)
    if company_text:
        parts.append(company_text)

    return "\n\n".join(p for p in parts if p)


# ==========================================
# REQUEST PAYLOAD
# ==========================================
def build_transcript(system_prompt, messages, limit=None):
    """Flatten the conversation into a single prompt ending with 'Assistant:'."""
    if limit:
        messages = messages[-limit:]
    text = f"{system_prompt}\n\n"
    for m in messages:
        tag = "User" if m.get('role') == 'user' else "Assistant"
        text += f"{tag}: {m.get('text', '')}\n"
    return text + "Assistant:"


def build_parts(text, files=None, limit=None):
    parts = [{"text": text}]
    attachments = [
        f for f in (files or [])
        if isinstance(f, dict) and isinstance(f.get('mime'), str) and isinstance(f.get('base64'), str)
        and f['mime'] and f['base64']
    ]
    if limit is not None:
        attachments = attachments[:limit]
    for f in attachments:
        data = f['base64']
        # Browser data URLs carry a "data:<mime>;base64," prefix
        if "base64," in data:
            data = data.split("base64,", 1)[1]
        parts.append({"inline_data": {"mime_type": f['mime'], "data": data}})
    return parts

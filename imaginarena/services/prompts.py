"""Пул творческих заданий для матчей с учетом языка турнира."""

import random

PROMPTS = {
    "en": [
        "A magical forest at sunset with glowing mushrooms",
        "A cyberpunk city street in the rain at night",
        "A cozy cabin in the mountains during winter",
        "An underwater palace with colorful coral gardens",
        "A steampunk airship floating above the clouds",
        "A desert oasis with ancient ruins in the background",
        "A space station orbiting a distant planet",
        "A medieval castle on a cliff overlooking the ocean",
        "A floating island with waterfalls cascading into clouds",
        "A neon-lit arcade from the 1980s",
        "A Victorian greenhouse filled with exotic plants",
        "A pirate ship sailing through a storm",
        "A futuristic laboratory with holographic displays",
        "A peaceful zen garden with cherry blossoms",
        "A bustling marketplace in ancient Rome",
        "A crystal cave with luminescent formations",
        "A treehouse village connected by rope bridges",
        "A lighthouse on a rocky coast during a thunderstorm",
        "A robot repair shop in a post-apocalyptic world",
        "A fairy tale cottage with a thatched roof and flower garden",
        "A samurai temple hidden in bamboo forests",
        "A clockwork city with gears and steam everywhere",
        "A dragon's lair filled with treasure and ancient artifacts",
        "A space colony on Mars with glass domes",
        "An art nouveau subway station with ornate details",
    ],
    "it": [
        "Una foresta magica al tramonto con funghi luminosi",
        "Una strada cyberpunk sotto la pioggia di notte",
        "Una baita accogliente in montagna d'inverno",
        "Un palazzo sottomarino con giardini di corallo colorati",
        "Un dirigibile steampunk sospeso sopra le nuvole",
        "Un'oasi nel deserto con antiche rovine sullo sfondo",
        "Una stazione spaziale in orbita attorno a un pianeta lontano",
        "Un castello medievale su una scogliera affacciata sull'oceano",
        "Un'isola volante con cascate che precipitano tra le nuvole",
        "Una sala giochi al neon degli anni '80",
        "Una serra vittoriana piena di piante esotiche",
        "Una nave pirata che attraversa una tempesta",
        "Un laboratorio futuristico con display olografici",
        "Un tranquillo giardino zen con ciliegi in fiore",
        "Un mercato affollato nell'antica Roma",
        "Una grotta di cristallo con formazioni luminescenti",
        "Un villaggio sugli alberi collegato da ponti di corda",
        "Un faro su una costa rocciosa durante un temporale",
        "Un'officina di riparazione robot in un mondo post-apocalittico",
        "Un cottage da fiaba con tetto di paglia e giardino fiorito",
        "Un tempio samurai nascosto in una foresta di bambù",
        "Una città a orologeria piena di ingranaggi e vapore",
        "La tana di un drago piena di tesori e antichi manufatti",
        "Una colonia spaziale su Marte con cupole di vetro",
        "Una stazione della metropolitana in stile liberty ricca di decorazioni",
    ],
}


def get_lang(language: str | None) -> str:
    # Возвращаем язык пула с безопасным фолбэком.
    return language if language in PROMPTS else "en"


def random_prompt(language: str | None, rng: random.Random | None = None) -> str:
    rng = rng or random
    return rng.choice(PROMPTS[get_lang(language)])


def random_prompt_excluding(language: str | None, current_prompt: str, rng: random.Random | None = None) -> str:
    """Случайное задание, отличное от текущего, если пул это позволяет."""
    rng = rng or random
    pool = PROMPTS[get_lang(language)]
    available = [prompt for prompt in pool if prompt != current_prompt]
    return rng.choice(available or pool)

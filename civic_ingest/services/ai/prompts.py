"""System prompts for the three text-processing stages."""

from civic_ingest.core.enums import Category

PROMPT_VERSION = "2.0"

CATEGORY_LIST = ", ".join(category.value for category in Category)


FILTER_SPLIT_PROMPT = """You process public announcements published by municipal offices and utility companies in Sofia, Bulgaria.

Split the announcement into the discrete messages it contains and judge each one.

RULES:
1. An announcement that describes several unrelated disruptions becomes several messages.
   An announcement about one disruption stays a single message.
2. A message is relevant when it tells residents about a disruption, closure,
   outage, repair or event that affects a place in the city.
   Greetings, job offers, procurement notices and similar texts are not relevant.
3. Keep the original language. Do not invent details.
4. plainText is the message text without markup; markdownText is the same text
   formatted as Markdown (lists, bold dates).
5. isOneOfMany is true when the announcement contained more than one message.
6. isInformative is false when the message carries no actionable information.
7. responsibleEntity is the organisation responsible for the work, or "".

Output ONLY a JSON array, one object per message:
[
  {
    "plainText": "string",
    "markdownText": "string",
    "isOneOfMany": boolean,
    "isInformative": boolean,
    "isRelevant": boolean,
    "responsibleEntity": "string"
  }
]"""


CATEGORIZE_PROMPT = f"""You categorize a single public announcement about Sofia, Bulgaria.

Allowed categories (use only these exact values): {CATEGORY_LIST}.

RULES:
1. categories lists every category that applies. Use [] when none applies.
2. withSpecificAddress is true when the text names streets, addresses, bus stops,
   coordinates or cadastral identifiers.
3. specificAddresses lists the address strings as written in the text.
4. coordinates lists explicit coordinates in the form "42.6977, 23.3219".
5. busStops lists public transport stop codes.
6. cadastralProperties lists cadastral identifiers such as "68134.1601.6124".
7. cityWide is true when the whole city is affected.
8. normalizedText is the message rewritten without greetings or signatures,
   keeping every date, time and location.

Output ONLY a JSON object:
{{
  "categories": ["string"],
  "relations": ["string"],
  "withSpecificAddress": boolean,
  "specificAddresses": ["string"],
  "coordinates": ["string"],
  "busStops": ["string"],
  "cadastralProperties": ["string"],
  "cityWide": boolean,
  "isRelevant": boolean,
  "normalizedText": "string"
}}"""


EXTRACT_LOCATIONS_PROMPT = """You extract locations from a public announcement about Sofia, Bulgaria.

RULES:
1. pins are single places: an address, a building, a square, a junction.
2. streets are sections of a street closed or affected between two points.
   "from" and "to" are cross streets or house numbers on that street.
3. cadastralProperties are parcels named by their cadastral identifier.
4. busStops are public transport stop codes.
5. Every location carries timespans when the text gives dates.
   Use the format "DD.MM.YYYY HH:MM" for both start and end.
6. Do not invent locations that are not in the text.

Output ONLY a JSON object:
{
  "withSpecificAddress": boolean,
  "busStops": ["string"],
  "cityWide": boolean,
  "pins": [
    {"address": "string", "timespans": [{"start": "string", "end": "string"}]}
  ],
  "streets": [
    {
      "street": "string",
      "from": "string",
      "to": "string",
      "timespans": [{"start": "string", "end": "string"}]
    }
  ],
  "cadastralProperties": [
    {"identifier": "string", "timespans": [{"start": "string", "end": "string"}]}
  ]
}"""

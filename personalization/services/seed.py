"""
Base interest taxonomy.

Seeding is idempotent: nodes whose id already exists are left untouched, so
admin edits made after the first seed survive a re-run.
"""
import logging

from personalization.errors import DuplicateInterestError
from personalization.services.taxonomy import InterestTaxonomy

logger = logging.getLogger(__name__)

# Parents precede their children
BASE_TAXONOMY: list[dict] = [
    # ── Roots ──────────────────────────────────────────────────────────────
    {
        "id": "fashion", "name": "fashion", "display_name": "Fashion",
        "description": "Clothing, style, trends, and fashion inspiration",
        "keywords": ["fashion", "style", "clothing", "outfit", "trends"],
        "synonyms": ["mode", "clothing"],
    },
    {
        "id": "photography", "name": "photography", "display_name": "Photography",
        "description": "Photography techniques, inspiration, and visual art",
        "keywords": ["photography", "photo", "camera", "portrait", "landscape"],
        "synonyms": ["photos", "pictures", "images"],
    },
    {
        "id": "design", "name": "design", "display_name": "Design",
        "description": "Graphic design, interior design, and product design",
        "keywords": ["design", "graphic", "interior", "product"],
        "synonyms": ["graphics", "layout", "aesthetics"],
    },
    {
        "id": "art", "name": "art", "display_name": "Art",
        "description": "Traditional art, digital art, street art, and artistic expression",
        "keywords": ["art", "painting", "drawing", "illustration", "artwork"],
        "synonyms": ["artistic", "fine art"],
    },
    {
        "id": "beauty", "name": "beauty", "display_name": "Beauty",
        "description": "Makeup, skincare, hair, and beauty tips",
        "keywords": ["beauty", "hair", "cosmetics"],
        "synonyms": ["beauty tips", "grooming"],
    },
    {
        "id": "travel", "name": "travel", "display_name": "Travel",
        "description": "Travel destinations, tips, and wanderlust inspiration",
        "keywords": ["travel", "destination", "vacation", "wanderlust", "adventure"],
        "synonyms": ["tourism", "trip"],
    },
    {
        "id": "food", "name": "food", "display_name": "Food",
        "description": "Cooking, recipes, restaurants, and culinary inspiration",
        "keywords": ["food", "cooking", "recipe", "restaurant", "culinary"],
        "synonyms": ["cuisine", "recipes"],
    },
    {
        "id": "architecture", "name": "architecture", "display_name": "Architecture",
        "description": "Buildings, structures, and architectural design",
        "keywords": ["architecture", "building", "structure", "urban"],
        "synonyms": ["buildings", "architectural design"],
    },
    {
        "id": "lifestyle", "name": "lifestyle", "display_name": "Lifestyle",
        "description": "Daily life, wellness, productivity, and personal development",
        "keywords": ["lifestyle", "wellness", "productivity", "habits"],
        "synonyms": ["living", "daily life"],
    },
    {
        "id": "creative", "name": "creative", "display_name": "Creative",
        "description": "DIY projects, crafts, and creative endeavors",
        "keywords": ["creative", "diy", "craft", "handmade", "project"],
        "synonyms": ["crafts"],
    },
    # ── Fashion ────────────────────────────────────────────────────────────
    {
        "id": "fashion_models", "parent_id": "fashion",
        "name": "models", "display_name": "Models",
        "description": "Fashion models, modeling, and model portfolios",
        "keywords": ["models", "modeling", "fashion model", "runway model"],
        "synonyms": ["fashion models"],
    },
    {
        "id": "fashion_streetwear", "parent_id": "fashion",
        "name": "streetwear", "display_name": "Streetwear",
        "description": "Urban fashion, street style, and casual wear",
        "keywords": ["streetwear", "street style", "casual"],
        "synonyms": ["street fashion", "urban wear"],
    },
    {
        "id": "fashion_haute_couture", "parent_id": "fashion",
        "name": "haute couture", "display_name": "Haute Couture",
        "description": "High fashion, luxury fashion, and designer collections",
        "keywords": ["haute couture", "high fashion", "luxury", "designer"],
        "synonyms": ["luxury fashion"],
    },
    {
        "id": "fashion_shows", "parent_id": "fashion",
        "name": "fashion shows", "display_name": "Fashion Shows",
        "description": "Fashion weeks, runway shows, and fashion events",
        "keywords": ["fashion show", "runway", "fashion week", "catwalk"],
        "synonyms": ["runway shows"],
        "related_interest_ids": ["fashion_models"],
    },
    {
        "id": "fashion_models_runway", "parent_id": "fashion_models",
        "name": "runway models", "display_name": "Runway Models",
        "description": "Professional runway and catwalk models",
        "keywords": ["catwalk", "fashion week"],
        "synonyms": ["catwalk models", "fashion week models"],
        "related_interest_ids": ["fashion_shows"],
    },
    # ── Photography ────────────────────────────────────────────────────────
    {
        "id": "photography_portrait", "parent_id": "photography",
        "name": "portrait photography", "display_name": "Portrait Photography",
        "description": "Portrait photography techniques and inspiration",
        "keywords": ["portrait", "people", "headshot"],
        "synonyms": ["portraiture", "people photography"],
    },
    {
        "id": "photography_landscape", "parent_id": "photography",
        "name": "landscape photography", "display_name": "Landscape Photography",
        "description": "Landscape and nature photography",
        "keywords": ["landscape", "nature", "scenery", "outdoor"],
        "synonyms": ["nature photography", "scenic photography"],
    },
    # ── Beauty / Food ──────────────────────────────────────────────────────
    {
        "id": "beauty_makeup", "parent_id": "beauty",
        "name": "makeup", "display_name": "Makeup",
        "description": "Makeup looks, tutorials, and products",
        "keywords": ["makeup", "lipstick", "eyeshadow", "foundation"],
        "synonyms": ["cosmetics"],
        "related_interest_ids": ["beauty_skincare"],
    },
    {
        "id": "beauty_skincare", "parent_id": "beauty",
        "name": "skincare", "display_name": "Skincare",
        "description": "Skincare routines and products",
        "keywords": ["skincare", "skin", "serum", "moisturizer"],
        "synonyms": ["skin care"],
        "related_interest_ids": ["beauty_makeup"],
    },
    {
        "id": "food_desserts", "parent_id": "food",
        "name": "desserts", "display_name": "Desserts",
        "description": "Cakes, pastries, and sweet treats",
        "keywords": ["dessert", "cake", "baking", "pastry", "sweets"],
        "synonyms": ["sweets", "baking"],
    },
    {
        "id": "food_healthy_eating", "parent_id": "food",
        "name": "healthy eating", "display_name": "Healthy Eating",
        "description": "Nutritious recipes and meal prep",
        "keywords": ["healthy", "nutrition", "meal prep", "salad"],
        "synonyms": ["clean eating"],
        "related_interest_ids": ["lifestyle"],
    },
]


async def seed_base_taxonomy(taxonomy: InterestTaxonomy) -> int:
    """Create any missing base interests; returns how many were created."""
    created = 0
    for node in BASE_TAXONOMY:
        try:
            await taxonomy.create_interest(
                name=node["name"],
                display_name=node["display_name"],
                parent_id=node.get("parent_id"),
                description=node.get("description"),
                keywords=node.get("keywords", []),
                synonyms=node.get("synonyms", []),
                related_interest_ids=node.get("related_interest_ids", []),
                interest_id=node["id"],
            )
            created += 1
        except DuplicateInterestError:
            logger.debug("Seed interest %s already present", node["id"])

    logger.info("Seeded base taxonomy: %d created, %d present", created, len(BASE_TAXONOMY) - created)
    return created

from typing import List

from .structured import Achievement

BUILT_IN_ACHIEVEMENTS: List[Achievement] = [
    Achievement("ach_first_word", "first_word", "First Word!", "Look up your very first word", "📖", "words",
                {"type": "words_viewed", "count": 1}),
    Achievement("ach_word_explorer", "word_explorer", "Word Explorer", "Learn 10 different words", "🧭", "words",
                {"type": "words_viewed", "count": 10}),
    Achievement("ach_word_wizard", "word_wizard", "Word Wizard", "Learn 50 different words", "🧙", "words",
                {"type": "words_viewed", "count": 50}),
    Achievement("ach_bookworm", "bookworm", "Bookworm", "Learn 100 different words", "🐛", "words",
                {"type": "words_viewed", "count": 100}),
    Achievement("ach_first_favorite", "first_favorite", "Heart Collector", "Save your first favorite word", "❤️",
                "exploration", {"type": "favorites", "count": 1}),
    Achievement("ach_favorite_five", "favorite_five", "Treasure Chest", "Save 5 favorite words", "💎",
                "exploration", {"type": "favorites", "count": 5}),
    Achievement("ach_streak_3", "streak_3", "On a Roll", "Learn words 3 days in a row", "🔥", "streak",
                {"type": "streak", "days": 3}),
    Achievement("ach_streak_7", "streak_7", "Super Week", "Learn words 7 days in a row", "🌟", "streak",
                {"type": "streak", "days": 7}),
    Achievement("ach_level_5", "level_5", "Rising Star", "Reach level 5", "🚀", "words",
                {"type": "level", "level": 5}),
]

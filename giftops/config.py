import os

# WOS gift code endpoints and redemption pacing
API_CONFIG = {
    "SECRET": os.getenv("API_SECRET", "tB87#kPtkxqOS2"),
    "PLAYER_URL": "https://wos-giftcode-api.centurygame.com/api/player",
    "GIFT_CODE_URL": "https://wos-giftcode-api.centurygame.com/api/gift_code",
    "CAPTCHA_URL": "https://wos-giftcode-api.centurygame.com/api/captcha",
    "ORIGIN": "https://wos-giftcode.centurygame.com",
    "REQUEST_TIMEOUT": 30,
    "RATE_LIMIT_DELAY": 60.0,
    "RETRY_DELAY": 3.0,
    "MAX_RETRIES": 3,
    "MAX_CAPTCHA_ATTEMPTS": 5,
    "MAX_CONSECUTIVE_RATE_LIMITS": 2,
    "MAX_AUTH_RETRIES": 2,
    "RATE_LIMIT_BACKOFF_CAP": 120.0,
    "UPDATE_INTERVAL": 10,  # progress snapshot every N processed players
    "BETWEEN_REDEMPTIONS_DELAY": 2.05,
    "VALIDATION_TO_REDEEM_COOLDOWN": 3.0,
}

# Shared gift code feed
GIFT_CODE_API_CONFIG = {
    "API_URL": "http://gift-code-api.whiteout-bot.com/giftcode_api.php",
    "API_KEY": os.getenv("GIFT_CODE_API_KEY", "super_secret_bot_token_nobody_will_ever_find"),
    "REQUEST_TIMEOUT": 30,
    "MIN_CHECK_INTERVAL": 300,
    "MAX_CHECK_INTERVAL": 600,
    "INITIAL_DELAY": 60,
    "MIN_API_CALL_INTERVAL": 3.0,
    "ERROR_BACKOFF": 30.0,
    "CLOUDFLARE_BACKOFF": 15.0,
    "MAX_BACKOFF": 300.0,
}

PROCESS_PRIORITIES = {
    "ADD_PLAYER": 100000,
    "VALIDATE_GIFTCODE": 150000,  # below every redeem, so a validation always preempts
    "REDEEM_GIFTCODE": 200000,
}

DB_PATH = os.getenv("GIFTOPS_DB_PATH", os.path.join("db", "giftcode.sqlite"))
LOG_DIR = os.getenv("GIFTOPS_LOG_DIR", "log")
MODEL_DIR = os.getenv("GIFTOPS_MODEL_DIR", "model")

CAPTCHA_MODEL_PATH = os.path.join(MODEL_DIR, "captcha_model.onnx")
CAPTCHA_METADATA_PATH = os.path.join(MODEL_DIR, "captcha_model_metadata.json")
CAPTCHA_IDLE_TIMEOUT = 120  # seconds of inactivity before the model is unloaded

DEFAULT_TEST_ID = "244886619"
PLAYER_NOT_EXIST_LIMIT = 3

import os

from selenium.common.exceptions import WebDriverException

from marketplace.config import Config
from marketplace.gumroad_browser import GumroadBrowserClient


def main():
    config = Config.from_env().with_overrides(gumroad_headless=False)

    print("=" * 60)
    print(" GUMROAD AUTHENTICATION SETUP")
    print("=" * 60)
    print("Gumroad has no product-creation API, so publishing drives the real")
    print("website in Chrome. This script opens that browser once so you can log in.")
    print("\nINSTRUCTIONS:")
    print("1. The browser will open to the Gumroad login page.")
    print("2. Log in (solve any captcha or 2FA prompt yourself).")
    print("3. Once you see your Gumroad dashboard, CLOSE the browser window.")
    print(f"4. This will save your session cookies to '{config.gumroad_profile_dir}'.")
    print("5. Future publishes will reuse this session instead of typing a password.")
    print("=" * 60)

    input("\nPress Enter to launch browser...")

    try:
        client = GumroadBrowserClient(config)
        client.login_setup()

        if os.path.exists(config.gumroad_profile_dir):
            print(f"\n✅ Setup Complete! '{config.gumroad_profile_dir}' directory created.")
            print("You can now publish projects to Gumroad.")
        else:
            print(f"\n⚠️ Warning: '{config.gumroad_profile_dir}' not found. Something might have gone wrong.")

    except WebDriverException as e:
        print(f"\n❌ Error: {e}")
        print("Make sure you have Chrome installed (or set CHROME_PATH).")


if __name__ == "__main__":
    main()

"""
Interactive terminal prompts.
"""

import getpass
import sys


def select(items, prompt, render=str, default=None):
    """Print a numbered list and return the chosen item."""
    for i, item in enumerate(items):
        print(f"  [{i + 1}] {render(item)}")
    hint = f" [{items.index(default) + 1}]" if default in items else ""
    while True:
        answer = input(f"\n{prompt}{hint}: ").strip()
        if not answer and default in items:
            return default
        try:
            idx = int(answer) - 1
            if 0 <= idx < len(items):
                return items[idx]
        except ValueError:
            pass
        print("Invalid selection, please try again.")


def ask(prompt, default=None):
    hint = f" [{default}]" if default else ""
    answer = input(f"{prompt}{hint}: ").strip()
    return answer or default


def ask_password(prompt="Password: "):
    return getpass.getpass(prompt)


def confirm(question, assume_yes=False):
    if assume_yes:
        return True
    answer = input(f"{question} [y/N]: ").strip().lower()
    return answer in ("y", "yes")


class ConsolePrompter:
    """MFA prompts for ``okta_creds.auth.login``."""

    def choose_factor(self, factors):
        print("\nAvailable MFA factors:")
        return select(list(factors), "Select factor")

    def passcode(self, factor):
        if factor.factor_type == "question":
            return getpass.getpass(f"{factor.detail or 'Security question'}: ").strip()
        return input(f"Enter code for {factor.label}: ").strip()

    def notify(self, message):
        print(message, file=sys.stderr)


def choose_role(roles, title="Available roles"):
    """Pick one SamlRole, grouped by account like the account/role menus."""
    if len(roles) == 1:
        return roles[0]
    roles = sorted(roles, key=lambda r: (r.account_id, r.role_name))
    print(f"\n{title}:")
    return select(roles, "Select role", render=lambda r: f"{r.account_id}  {r.role_name}")


class InteractiveChooser:
    """Role chooser for reconciliation that asks on the terminal.

    For each application the user may accept every suggested default at
    once, go through the accounts one by one, or defer them all.
    """

    def __call__(self, application, selections):
        count = len(selections)
        print(f"\n{application.label}: {count} account{'s' if count != 1 else ''} need a role")
        suggested = [s for s in selections if s.suggestion]
        options = []
        if suggested:
            options.append("accept")
        options.extend(["choose", "defer"])
        labels = {
            "accept": f"Accept suggested roles ({len(suggested)} account{'s' if len(suggested) != 1 else ''})",
            "choose": "Choose a role for each account",
            "defer": "Defer (decide later)",
        }
        action = select(options, "How should roles be chosen", render=labels.get, default=options[0])
        if action == "defer":
            return {}

        choices = {}
        for selection in selections:
            if action == "accept" and selection.suggestion:
                choices[selection.account.id] = selection.suggestion
                continue
            account = selection.account
            if selection.previous_role:
                print(f"  Note: previously selected role '{selection.previous_role}' is no longer available")
            print(f"\nRoles for {account.name} ({account.id}):")
            skip = "(decide later)"
            role = select(
                list(selection.ranking) + [skip],
                "Select role",
                default=selection.suggestion,
            )
            if role != skip:
                choices[account.id] = role
        return choices

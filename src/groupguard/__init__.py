"""
GroupGuard - AutoMod engine for VRChat group moderation

GroupGuard evaluates users and events against configurable per-group policies
and drives automated moderation actions against the VRChat API.

Core Components:

- **Rule Store**: Per-group rule lists and the auto-reject / auto-ban toggles,
  persisted to a key-value configuration file
- **Rule Parser/Cache**: Normalizes each rule's JSON configuration into a
  pre-compiled structure, cached by rule identity and content
- **Evaluator**: Maps a user snapshot and a group's rules to a verdict,
  failing open on any internal error
- **Enforcement Loops**: Gatekeeper (join requests), Instance Guard (age-gate
  and blacklist closing) and Permission Guard (unauthorized instance sniping)
- **Interactive Console**: Live administration interface for status checks,
  manual scans and graceful shutdown

Usage:
    from groupguard.main import main
    main()  # Starts the enforcement loops with the console interface
"""

__version__ = "0.1.0"

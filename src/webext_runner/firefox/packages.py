"""Known Firefox for Android package identifiers."""

# More specific identifiers first: "org.mozilla.fenix.debug" must match before
# "org.mozilla.fenix".
PACKAGE_IDENTIFIERS = (
    "org.mozilla.fennec",
    "org.mozilla.fenix.debug",
    "org.mozilla.fenix",
    "org.mozilla.geckoview_example",
    "org.mozilla.geckoview",
    "org.mozilla.firefox",
    "org.mozilla.reference.browser",
)

DEFAULT_APK_COMPONENTS = {
    "org.mozilla.reference.browser": ".BrowserActivity",
}

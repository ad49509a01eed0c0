"""
Loader Agent: keeps one remotely described application installed and running.

Reads a retained configuration document from an MQTT broker, downloads the
referenced artifact, hands it to the platform installer and repeats until the
package is installed, then launches it.
"""

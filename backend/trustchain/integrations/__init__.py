# Overview: Adapters for external collaborators (payment gateway, SMS transport).
